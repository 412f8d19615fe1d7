from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, time as dt_time, timedelta
from decimal import Decimal
from functools import lru_cache
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable
from uuid import UUID

from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from clusterwatch.core.config import get_settings
from clusterwatch.core.errors import TargetConnectionError
from clusterwatch.domain.models import DatabaseConnection, Instance
from clusterwatch.services.connections.tunnel import SshTunnel, TunnelDescriptor, open_tunnel
from clusterwatch.services.telemetry import record_target_call


logger = logging.getLogger(__name__)

Release = Callable[[], Awaitable[None]]

_USER_DATABASES_SQL = """
SELECT datname
FROM pg_database
WHERE NOT datistemplate AND datallowconn
ORDER BY datname
"""


@dataclass(frozen=True)
class TargetDescriptor:
    label: str
    host: str
    port: int
    database: str
    username: str
    password: str | None
    use_ssl: bool = False
    tunnel: TunnelDescriptor | None = None


def _tunnel_for(instance: Instance) -> TunnelDescriptor | None:
    if not instance.use_ssh_tunnel or not instance.ssh_host:
        return None
    return TunnelDescriptor(
        host=instance.ssh_host,
        port=instance.ssh_port or 22,
        username=instance.ssh_username,
        password=instance.ssh_password,
        private_key=instance.ssh_private_key,
        passphrase=instance.ssh_key_passphrase,
    )


def target_for_instance(instance: Instance, database_name: str | None = None) -> TargetDescriptor:
    database = database_name or instance.default_database_name or "postgres"
    return TargetDescriptor(
        label=f"{instance.hostname}:{instance.port}/{database}",
        host=instance.hostname,
        port=instance.port,
        database=database,
        username=instance.username,
        password=instance.password,
        use_ssl=instance.use_ssl,
        tunnel=_tunnel_for(instance),
    )


def target_for_database(database: DatabaseConnection, instance: Instance) -> TargetDescriptor:
    # Database records may override credentials; host, port and tunnel always come from the instance.
    return TargetDescriptor(
        label=f"{instance.hostname}:{instance.port}/{database.database_name}",
        host=instance.hostname,
        port=instance.port,
        database=database.database_name,
        username=database.username or instance.username,
        password=database.password if database.username else instance.password,
        use_ssl=instance.use_ssl,
        tunnel=_tunnel_for(instance),
    )


def _jsonable(value: Any) -> Any:
    # Rows end up in JSON columns and markdown tables; coerce driver types to plain values.
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date, dt_time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return str(value)


class ConnectionProvider:
    """Resolve a target into a live connection, tunneling through SSH when configured.

    Both paths share one teardown routine so release semantics are identical:
    the connection closes first, then its engine, then the tunnel.
    """

    def __init__(
        self,
        *,
        connect_timeout_s: float,
        statement_timeout_ms: int,
        application_name: str,
        ssh_timeout_s: float,
        known_hosts: str | None = None,
        system_databases: set[str] | None = None,
    ) -> None:
        self.connect_timeout_s = connect_timeout_s
        self.statement_timeout_ms = statement_timeout_ms
        self.application_name = application_name
        self.ssh_timeout_s = ssh_timeout_s
        self.known_hosts = known_hosts
        self.system_databases = system_databases or set()

    def _create_engine(self, target: TargetDescriptor, host: str, port: int) -> AsyncEngine:
        url = URL.create(
            "postgresql+asyncpg",
            username=target.username,
            password=target.password,
            host=host,
            port=port,
            database=target.database,
        )
        server_settings = {"application_name": self.application_name}
        if self.statement_timeout_ms > 0:
            server_settings["statement_timeout"] = str(int(self.statement_timeout_ms))
        connect_args: dict[str, Any] = {
            "timeout": self.connect_timeout_s,
            "server_settings": server_settings,
        }
        if target.use_ssl:
            connect_args["ssl"] = "require"
        # One short-lived connection per target; pooling would pin tunnels open.
        return create_async_engine(url, poolclass=NullPool, connect_args=connect_args)

    async def _open_tunnel(self, target: TargetDescriptor) -> SshTunnel:
        return await open_tunnel(
            target.tunnel,
            remote_host=target.host,
            remote_port=target.port,
            timeout_s=self.ssh_timeout_s,
            known_hosts=self.known_hosts,
        )

    @staticmethod
    async def _teardown(
        connection: AsyncConnection | None,
        engine: AsyncEngine | None,
        tunnel: SshTunnel | None,
    ) -> None:
        # Each step runs even when an earlier one fails; the first failure is re-raised at the end.
        first_error: BaseException | None = None
        steps: list[Callable[[], Awaitable[None]]] = []
        if connection is not None:
            steps.append(connection.close)
        if engine is not None:
            steps.append(engine.dispose)
        if tunnel is not None:
            steps.append(tunnel.close)
        for step in steps:
            try:
                await step()
            except Exception as exc:  # noqa: BLE001 - finish teardown before surfacing
                logger.warning("target_teardown_step_failed step=%s", getattr(step, "__qualname__", step), exc_info=exc)
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error

    async def resolve(self, target: TargetDescriptor) -> tuple[AsyncConnection, Release]:
        tunnel: SshTunnel | None = None
        engine: AsyncEngine | None = None
        started = time.perf_counter()
        try:
            host, port = target.host, target.port
            if target.tunnel is not None:
                tunnel = await self._open_tunnel(target)
                host, port = tunnel.local_host, tunnel.local_port
            engine = self._create_engine(target, host, port)
            connection = await asyncio.wait_for(engine.connect(), timeout=self.connect_timeout_s)
        except BaseException as exc:
            try:
                await self._teardown(None, engine, tunnel)
            except Exception:  # noqa: BLE001 - the connect failure is the error worth reporting
                logger.warning("target_teardown_failed target=%s", target.label)
            record_target_call(
                target=target.label,
                operation="connect",
                latency_ms=(time.perf_counter() - started) * 1000.0,
                success=False,
            )
            if isinstance(exc, Exception):
                logger.warning("target_connect_failed target=%s error=%s", target.label, exc)
                raise TargetConnectionError(target.label, exc) from exc
            raise
        record_target_call(
            target=target.label,
            operation="connect",
            latency_ms=(time.perf_counter() - started) * 1000.0,
            success=True,
        )

        released = False

        async def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            await self._teardown(connection, engine, tunnel)

        return connection, release

    @asynccontextmanager
    async def connect(self, target: TargetDescriptor) -> AsyncIterator[AsyncConnection]:
        handle, release = await self.resolve(target)
        try:
            yield handle
        finally:
            # The body's outcome (rows or its own error) wins over a failed close.
            try:
                await release()
            except Exception as exc:  # noqa: BLE001 - teardown failure must not replace the result
                logger.warning("target_release_failed target=%s error=%s", target.label, exc)

    async def fetch_rows(self, handle: AsyncConnection, sql: str) -> list[dict[str, Any]]:
        # Driver-level execution: catalog queries contain casts (::) that must not be parsed as bind params.
        result = await handle.exec_driver_sql(sql)
        if not result.returns_rows:
            return []
        return [{key: _jsonable(value) for key, value in row._mapping.items()} for row in result]

    async def list_user_databases(self, handle: AsyncConnection) -> list[str]:
        rows = await self.fetch_rows(handle, _USER_DATABASES_SQL)
        return [row["datname"] for row in rows if row["datname"] not in self.system_databases]


@lru_cache
def get_connection_provider() -> ConnectionProvider:
    settings = get_settings()
    return ConnectionProvider(
        connect_timeout_s=float(settings.target_connect_timeout_s),
        statement_timeout_ms=int(settings.target_statement_timeout_ms),
        application_name=settings.target_application_name,
        ssh_timeout_s=float(settings.ssh_connect_timeout_s),
        known_hosts=settings.ssh_known_hosts,
        system_databases=settings.system_database_names(),
    )

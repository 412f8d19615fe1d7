from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any

import asyncssh


logger = logging.getLogger(__name__)

LOCAL_HOST = "127.0.0.1"


@dataclass(frozen=True)
class TunnelDescriptor:
    host: str
    port: int = 22
    username: str | None = None
    password: str | None = None
    private_key: str | None = None
    passphrase: str | None = None


class SshTunnel:
    """A local port forward through an SSH host to a remote database endpoint."""

    def __init__(self, connection: asyncssh.SSHClientConnection, listener: asyncssh.SSHListener) -> None:
        self._connection = connection
        self._listener = listener
        self._closed = False

    @property
    def local_host(self) -> str:
        return LOCAL_HOST

    @property
    def local_port(self) -> int:
        return self._listener.get_port()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._listener.close()
        self._connection.close()
        await self._connection.wait_closed()


def _connect_options(descriptor: TunnelDescriptor, known_hosts: str | None) -> dict[str, Any]:
    options: dict[str, Any] = {
        "host": descriptor.host,
        "port": descriptor.port,
        "username": descriptor.username,
        # None disables host key checks; operators opt in by pointing at a known_hosts file.
        "known_hosts": known_hosts,
    }
    if descriptor.private_key:
        options["client_keys"] = [
            asyncssh.import_private_key(descriptor.private_key, descriptor.passphrase)
        ]
    elif descriptor.password:
        options["password"] = descriptor.password
    return options


async def open_tunnel(
    descriptor: TunnelDescriptor,
    *,
    remote_host: str,
    remote_port: int,
    timeout_s: float,
    known_hosts: str | None = None,
) -> SshTunnel:
    connection = await asyncio.wait_for(
        asyncssh.connect(**_connect_options(descriptor, known_hosts)),
        timeout=timeout_s,
    )
    try:
        # Port 0 lets the OS pick a free local port per tunnel.
        listener = await connection.forward_local_port(LOCAL_HOST, 0, remote_host, remote_port)
    except BaseException:
        connection.close()
        await connection.wait_closed()
        raise
    logger.info(
        "ssh_tunnel_opened ssh_host=%s remote=%s:%s local_port=%s",
        descriptor.host,
        remote_host,
        remote_port,
        listener.get_port(),
    )
    return SshTunnel(connection, listener)

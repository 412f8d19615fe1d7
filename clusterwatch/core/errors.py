from __future__ import annotations


class ClusterwatchError(Exception):
    """Base error for clusterwatch."""


class TargetConnectionError(ClusterwatchError):
    """Tunnel or database connect/auth failure for a monitored target."""

    def __init__(self, target: str, cause: BaseException | None = None) -> None:
        self.target = target
        self.cause = cause
        detail = f"{type(cause).__name__}: {cause}" if cause is not None else "unknown cause"
        super().__init__(f"could not connect to {target} ({detail})")


class ExtensionUnavailableError(ClusterwatchError):
    """pg_stat_statements is not installed or not loaded on the target."""


class TargetExecutionError(ClusterwatchError):
    """A diagnostic query failed on one target."""

    def __init__(self, target: str, message: str) -> None:
        self.target = target
        super().__init__(f"query failed on {target}: {message}")


class CatalogError(ClusterwatchError):
    """A health-check run cannot be planned (missing cluster, writer or definitions)."""


class NotFoundError(ClusterwatchError):
    """Requested record does not exist."""


class DatabaseNotFoundError(NotFoundError):
    """Monitored database id is unknown."""


class StatementNotFoundError(NotFoundError):
    """Canonical statement id is unknown."""


class StatementGroupNotFoundError(NotFoundError):
    """Statement group id is unknown or belongs to another database."""


class MonitoringSessionNotFoundError(NotFoundError):
    """Monitoring session id is unknown."""


class ExecutionNotFoundError(NotFoundError):
    """Health-check execution id is unknown."""


class MonitoringConflictError(ClusterwatchError):
    """A monitoring loop is already live for the database."""

    def __init__(self, database_id: str) -> None:
        self.database_id = database_id
        super().__init__(f"monitoring already running for database {database_id}")


class InvalidMonitoringConfigError(ClusterwatchError):
    """Monitoring parameters are out of range."""

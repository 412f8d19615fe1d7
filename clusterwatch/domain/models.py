from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (sqlite-backed unit tests).
JsonType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend.

    SQLite drops tzinfo on the way out; re-attach UTC so comparisons against
    ``datetime.now(timezone.utc)`` never mix naive and aware values.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # noqa: ANN001
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):  # noqa: ANN001
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    pass


class Cluster(Base):
    __tablename__ = "clusters"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Databases skipped and added when a check enumerates every user database.
    ignored_databases: Mapped[list[str]] = mapped_column(JsonType, default=list, nullable=False)
    extra_databases: Mapped[list[str]] = mapped_column(JsonType, default=list, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())


class Instance(Base):
    __tablename__ = "instances"
    __table_args__ = (
        Index("ix_instances_cluster_writer", "cluster_id", "is_writer"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    cluster_id: Mapped[str] = mapped_column(String, ForeignKey("clusters.id", ondelete="CASCADE"), index=True)
    hostname: Mapped[str] = mapped_column(String)
    port: Mapped[int] = mapped_column(Integer, default=5432, nullable=False)
    username: Mapped[str] = mapped_column(String)
    password: Mapped[str] = mapped_column(String)
    # Writer uniqueness per cluster is enforced by the console, not here.
    is_writer: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    default_database_name: Mapped[str] = mapped_column(String, default="postgres", nullable=False)
    use_ssl: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    use_ssh_tunnel: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    ssh_host: Mapped[str | None] = mapped_column(String, nullable=True)
    ssh_port: Mapped[int] = mapped_column(Integer, default=22, nullable=False)
    ssh_username: Mapped[str | None] = mapped_column(String, nullable=True)
    ssh_password: Mapped[str | None] = mapped_column(String, nullable=True)
    ssh_private_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    ssh_key_passphrase: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())


class DatabaseConnection(Base):
    __tablename__ = "database_connections"

    # A monitored database on an instance; credentials fall back to the instance's.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    instance_id: Mapped[str] = mapped_column(String, ForeignKey("instances.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String)
    database_name: Mapped[str] = mapped_column(String)
    username: Mapped[str | None] = mapped_column(String, nullable=True)
    password: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())


class StatementGroup(Base):
    __tablename__ = "statement_groups"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    database_id: Mapped[str] = mapped_column(
        String, ForeignKey("database_connections.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())


class CanonicalStatement(Base):
    __tablename__ = "canonical_statements"
    __table_args__ = (
        UniqueConstraint("database_id", "signature", name="uq_canonical_statements_signature"),
        Index("ix_canonical_statements_database_last_seen", "database_id", "last_seen_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    database_id: Mapped[str] = mapped_column(
        String, ForeignKey("database_connections.id", ondelete="CASCADE"), index=True
    )
    canonical_text: Mapped[str] = mapped_column(Text)
    signature: Mapped[str] = mapped_column(String(32))
    first_seen_at: Mapped[datetime] = mapped_column(UTCDateTime)
    last_seen_at: Mapped[datetime] = mapped_column(UTCDateTime)
    is_known: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    group_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("statement_groups.id", ondelete="SET NULL"), nullable=True, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now()
    )


class StatementSample(Base):
    __tablename__ = "statement_samples"
    __table_args__ = (
        UniqueConstraint("canonical_id", "raw_hash", name="uq_statement_samples_raw_hash"),
        Index("ix_statement_samples_canonical_updated", "canonical_id", "last_updated_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    canonical_id: Mapped[str] = mapped_column(
        String, ForeignKey("canonical_statements.id", ondelete="CASCADE"), index=True
    )
    database_id: Mapped[str] = mapped_column(String, index=True)
    raw_text: Mapped[str] = mapped_column(Text)
    raw_hash: Mapped[str] = mapped_column(String(32))
    # Aggregates mirror pg_stat_statements: cumulative calls, times in milliseconds.
    calls: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_time: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    min_time: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_time: Mapped[float | None] = mapped_column(Float, nullable=True)
    mean_time: Mapped[float | None] = mapped_column(Float, nullable=True)
    collected_at: Mapped[datetime] = mapped_column(UTCDateTime)
    last_updated_at: Mapped[datetime] = mapped_column(UTCDateTime)


class MonitoringSessionRecord(Base):
    __tablename__ = "monitoring_sessions"

    # One reusable record per database; restarts flip it back to active.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    database_id: Mapped[str] = mapped_column(
        String, ForeignKey("database_connections.id", ondelete="CASCADE"), unique=True
    )
    requested_by: Mapped[str] = mapped_column(String)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    status: Mapped[str] = mapped_column(String, default="running", nullable=False)
    interval_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduled_end_time: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_cycle_status: Mapped[str | None] = mapped_column(String, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime)
    stopped_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now()
    )


class HealthCheckDefinition(Base):
    __tablename__ = "health_check_definitions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Stable catalog key so reseeding never duplicates built-in checks.
    key: Mapped[str] = mapped_column(String, unique=True)
    title: Mapped[str] = mapped_column(String)
    query: Mapped[str] = mapped_column(Text)
    instance_scope: Mapped[str] = mapped_column(String, default="all_instances", nullable=False)
    database_scope: Mapped[str] = mapped_column(String, default="single", nullable=False)
    warn_when: Mapped[str] = mapped_column(String, default="never", nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())


class HealthCheckExecution(Base):
    __tablename__ = "health_check_executions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # No FK: a run against a deleted cluster is still recorded as failed.
    cluster_id: Mapped[str] = mapped_column(String, index=True)
    requested_by: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="running", nullable=False)
    markdown: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class HealthCheckResult(Base):
    __tablename__ = "health_check_results"
    __table_args__ = (
        Index("ix_health_check_results_execution", "execution_id", "id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    execution_id: Mapped[str] = mapped_column(
        String, ForeignKey("health_check_executions.id", ondelete="CASCADE")
    )
    definition_id: Mapped[str] = mapped_column(String)
    check_key: Mapped[str] = mapped_column(String)
    check_title: Mapped[str] = mapped_column(String)
    instance_id: Mapped[str | None] = mapped_column(String, nullable=True)
    instance_label: Mapped[str | None] = mapped_column(String, nullable=True)
    database_name: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String)
    rows_json: Mapped[list[dict[str, Any]] | None] = mapped_column(JsonType, nullable=True)
    row_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    executed_at: Mapped[datetime] = mapped_column(UTCDateTime)

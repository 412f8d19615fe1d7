from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from clusterwatch.core.errors import StatementGroupNotFoundError, StatementNotFoundError
from clusterwatch.domain.models import CanonicalStatement, StatementGroup, StatementSample
from clusterwatch.persistence.db import dialect_insert


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


# Distinguishes "leave unchanged" from an explicit None (clear the group).
UNSET: Any = _Unset()


@dataclass(frozen=True)
class SampleStats:
    calls: int
    total_time: float
    min_time: float | None = None
    max_time: float | None = None
    mean_time: float | None = None


@dataclass(frozen=True)
class StatementFilters:
    seen_from: datetime | None = None
    seen_to: datetime | None = None
    search: str | None = None
    known: bool | None = None
    group_id: str | None = None
    ungrouped: bool = False
    limit: int = 100
    offset: int = 0


@dataclass(frozen=True)
class CanonicalStatementView:
    id: str
    database_id: str
    canonical_text: str
    signature: str
    first_seen_at: datetime
    last_seen_at: datetime
    is_known: bool
    group_id: str | None
    sample_count: int
    total_calls: int
    total_time: float
    min_time: float | None
    max_time: float | None
    mean_time: float | None
    representative_text: str | None


async def get_statement(session: AsyncSession, canonical_id: str) -> CanonicalStatement | None:
    return await session.get(CanonicalStatement, canonical_id)


async def _find_canonical(
    session: AsyncSession, database_id: str, signature: str
) -> CanonicalStatement | None:
    result = await session.execute(
        select(CanonicalStatement).where(
            CanonicalStatement.database_id == database_id,
            CanonicalStatement.signature == signature,
        )
    )
    return result.scalar_one_or_none()


async def _touch_last_seen(session: AsyncSession, row: CanonicalStatement, observed_at: datetime) -> None:
    # last_seen only moves forward so late writers never rewind recency.
    if row.last_seen_at is None or observed_at > row.last_seen_at:
        row.last_seen_at = observed_at
    await session.flush()


async def upsert_canonical_statement(
    session: AsyncSession,
    *,
    database_id: str,
    canonical_text: str,
    signature: str,
    observed_at: datetime,
) -> tuple[CanonicalStatement, bool]:
    existing = await _find_canonical(session, database_id, signature)
    if existing is not None:
        await _touch_last_seen(session, existing, observed_at)
        return existing, False

    # Race-safe insert: a concurrent sampler may create the row first, so reload instead of failing.
    stmt = dialect_insert(session, CanonicalStatement).values(
        id=uuid4().hex,
        database_id=database_id,
        canonical_text=canonical_text,
        signature=signature,
        first_seen_at=observed_at,
        last_seen_at=observed_at,
        is_known=False,
        group_id=None,
    )
    stmt = stmt.on_conflict_do_nothing(index_elements=["database_id", "signature"])
    result = await session.execute(stmt)
    created = bool(result.rowcount)

    row = await _find_canonical(session, database_id, signature)
    if row is None:
        raise StatementNotFoundError(f"canonical statement {signature} vanished after insert")
    if not created:
        await _touch_last_seen(session, row, observed_at)
    return row, created


async def _find_sample(session: AsyncSession, canonical_id: str, raw_hash: str) -> StatementSample | None:
    result = await session.execute(
        select(StatementSample).where(
            StatementSample.canonical_id == canonical_id,
            StatementSample.raw_hash == raw_hash,
        )
    )
    return result.scalar_one_or_none()


async def _overwrite_sample(
    session: AsyncSession, row: StatementSample, stats: SampleStats, observed_at: datetime
) -> None:
    # pg_stat_statements reports cumulative aggregates, so the latest sample replaces the old one.
    row.calls = int(stats.calls)
    row.total_time = float(stats.total_time)
    row.min_time = stats.min_time
    row.max_time = stats.max_time
    row.mean_time = stats.mean_time
    row.last_updated_at = observed_at
    await session.flush()


async def upsert_sample(
    session: AsyncSession,
    *,
    canonical_id: str,
    database_id: str,
    raw_text: str,
    raw_hash: str,
    stats: SampleStats,
    observed_at: datetime,
) -> tuple[StatementSample, bool]:
    existing = await _find_sample(session, canonical_id, raw_hash)
    if existing is not None:
        await _overwrite_sample(session, existing, stats, observed_at)
        return existing, False

    stmt = dialect_insert(session, StatementSample).values(
        id=uuid4().hex,
        canonical_id=canonical_id,
        database_id=database_id,
        raw_text=raw_text,
        raw_hash=raw_hash,
        calls=int(stats.calls),
        total_time=float(stats.total_time),
        min_time=stats.min_time,
        max_time=stats.max_time,
        mean_time=stats.mean_time,
        collected_at=observed_at,
        last_updated_at=observed_at,
    )
    stmt = stmt.on_conflict_do_nothing(index_elements=["canonical_id", "raw_hash"])
    result = await session.execute(stmt)
    created = bool(result.rowcount)

    row = await _find_sample(session, canonical_id, raw_hash)
    if row is None:
        raise StatementNotFoundError(f"sample {raw_hash} vanished after insert")
    if not created:
        await _overwrite_sample(session, row, stats, observed_at)
    return row, created


async def set_triage(
    session: AsyncSession,
    canonical_id: str,
    *,
    known: bool | None = UNSET,
    group_id: str | None = UNSET,
) -> CanonicalStatement:
    row = await get_statement(session, canonical_id)
    if row is None:
        raise StatementNotFoundError(f"canonical statement {canonical_id} not found")
    if known is not UNSET and known is not None:
        row.is_known = bool(known)
    if group_id is not UNSET:
        if group_id is not None:
            group = await session.get(StatementGroup, group_id)
            # Groups are per database; never attach a statement to another database's bucket.
            if group is None or group.database_id != row.database_id:
                raise StatementGroupNotFoundError(f"statement group {group_id} not found")
        row.group_id = group_id
    await session.flush()
    return row


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


async def query_statements(
    session: AsyncSession,
    database_id: str,
    filters: StatementFilters | None = None,
) -> list[CanonicalStatementView]:
    filters = filters or StatementFilters()

    # Representative text is the sample refreshed most recently for each canonical statement.
    representative = (
        select(StatementSample.raw_text)
        .where(StatementSample.canonical_id == CanonicalStatement.id)
        .order_by(StatementSample.last_updated_at.desc(), StatementSample.id.desc())
        .limit(1)
        .correlate(CanonicalStatement)
        .scalar_subquery()
    )
    total_calls = func.coalesce(func.sum(StatementSample.calls), 0)
    total_time = func.coalesce(func.sum(StatementSample.total_time), 0.0)
    stmt = (
        select(
            CanonicalStatement,
            func.count(StatementSample.id).label("sample_count"),
            total_calls.label("total_calls"),
            total_time.label("total_time"),
            func.min(StatementSample.min_time).label("min_time"),
            func.max(StatementSample.max_time).label("max_time"),
            representative.label("representative_text"),
        )
        .outerjoin(StatementSample, StatementSample.canonical_id == CanonicalStatement.id)
        .where(CanonicalStatement.database_id == database_id)
    )
    if filters.seen_from is not None:
        stmt = stmt.where(CanonicalStatement.last_seen_at >= filters.seen_from)
    if filters.seen_to is not None:
        stmt = stmt.where(CanonicalStatement.last_seen_at <= filters.seen_to)
    if filters.known is not None:
        stmt = stmt.where(CanonicalStatement.is_known.is_(filters.known))
    if filters.ungrouped:
        stmt = stmt.where(CanonicalStatement.group_id.is_(None))
    elif filters.group_id:
        stmt = stmt.where(CanonicalStatement.group_id == filters.group_id)
    if filters.search and filters.search.strip():
        pattern = f"%{_escape_like(filters.search.strip())}%"
        matching = select(StatementSample.canonical_id).where(
            StatementSample.raw_text.ilike(pattern, escape="\\")
        )
        stmt = stmt.where(CanonicalStatement.id.in_(matching))

    stmt = (
        stmt.group_by(CanonicalStatement.id)
        .order_by(CanonicalStatement.last_seen_at.desc(), CanonicalStatement.id)
        .offset(max(0, filters.offset))
        .limit(max(1, filters.limit))
    )
    result = await session.execute(stmt)
    views: list[CanonicalStatementView] = []
    for row in result.all():
        statement: CanonicalStatement = row[0]
        calls = int(row.total_calls or 0)
        time_total = float(row.total_time or 0.0)
        views.append(
            CanonicalStatementView(
                id=statement.id,
                database_id=statement.database_id,
                canonical_text=statement.canonical_text,
                signature=statement.signature,
                first_seen_at=statement.first_seen_at,
                last_seen_at=statement.last_seen_at,
                is_known=statement.is_known,
                group_id=statement.group_id,
                sample_count=int(row.sample_count or 0),
                total_calls=calls,
                total_time=time_total,
                min_time=row.min_time,
                max_time=row.max_time,
                mean_time=(time_total / calls) if calls else None,
                representative_text=row.representative_text,
            )
        )
    return views

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from clusterwatch.core.errors import StatementGroupNotFoundError, StatementNotFoundError
from clusterwatch.persistence.db import SessionLocal
from clusterwatch.persistence.repos import groups as groups_repo
from clusterwatch.persistence.repos import statements as statements_repo
from clusterwatch.persistence.repos.statements import SampleStats, StatementFilters
from clusterwatch.services import normalizer
from clusterwatch.tests.utils.seed import create_monitored_database


T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


async def _observe(database_id: str, raw: str, *, calls: int, total_time: float, at: datetime) -> str:
    canonical, sig = normalizer.normalize_and_hash(raw)
    async with SessionLocal() as session:
        row, _ = await statements_repo.upsert_canonical_statement(
            session,
            database_id=database_id,
            canonical_text=canonical,
            signature=sig,
            observed_at=at,
        )
        await statements_repo.upsert_sample(
            session,
            canonical_id=row.id,
            database_id=database_id,
            raw_text=raw,
            raw_hash=normalizer.raw_hash(raw),
            stats=SampleStats(calls=calls, total_time=total_time),
            observed_at=at,
        )
        await session.commit()
        return row.id


@pytest.mark.asyncio
async def test_repeated_observation_keeps_first_seen_and_overwrites_aggregates() -> None:
    database_id = await create_monitored_database()
    raw = "SELECT * FROM orders WHERE id = 1"
    first_id = await _observe(database_id, raw, calls=5, total_time=50.0, at=T0)
    second_id = await _observe(database_id, raw, calls=7, total_time=91.0, at=T0 + timedelta(minutes=1))
    assert first_id == second_id

    async with SessionLocal() as session:
        views = await statements_repo.query_statements(session, database_id)
    assert len(views) == 1
    view = views[0]
    assert view.first_seen_at == T0
    assert view.last_seen_at == T0 + timedelta(minutes=1)
    assert view.sample_count == 1
    assert view.total_calls == 7
    assert view.total_time == pytest.approx(91.0)
    assert view.mean_time == pytest.approx(13.0)
    assert view.is_known is False
    assert view.group_id is None


@pytest.mark.asyncio
async def test_upsert_reports_created_only_once() -> None:
    database_id = await create_monitored_database()
    canonical, sig = normalizer.normalize_and_hash("SELECT 1")
    async with SessionLocal() as session:
        _, created = await statements_repo.upsert_canonical_statement(
            session, database_id=database_id, canonical_text=canonical, signature=sig, observed_at=T0
        )
        _, created_again = await statements_repo.upsert_canonical_statement(
            session, database_id=database_id, canonical_text=canonical, signature=sig, observed_at=T0
        )
        await session.commit()
    assert created is True
    assert created_again is False


@pytest.mark.asyncio
async def test_last_seen_never_moves_backwards() -> None:
    database_id = await create_monitored_database()
    raw = "SELECT * FROM t WHERE id = 1"
    await _observe(database_id, raw, calls=1, total_time=1.0, at=T0 + timedelta(hours=1))
    await _observe(database_id, raw, calls=2, total_time=2.0, at=T0)
    async with SessionLocal() as session:
        view = (await statements_repo.query_statements(session, database_id))[0]
    assert view.last_seen_at == T0 + timedelta(hours=1)
    assert view.first_seen_at <= view.last_seen_at


@pytest.mark.asyncio
async def test_variants_aggregate_under_one_canonical_statement() -> None:
    database_id = await create_monitored_database()
    await _observe(database_id, "SELECT * FROM t WHERE id IN (1, 2)", calls=3, total_time=30.0, at=T0)
    await _observe(
        database_id,
        "SELECT * FROM t WHERE id IN (1, 2, 3, 4)",
        calls=1,
        total_time=20.0,
        at=T0 + timedelta(seconds=30),
    )
    async with SessionLocal() as session:
        views = await statements_repo.query_statements(session, database_id)
    assert len(views) == 1
    view = views[0]
    assert view.canonical_text == "SELECT * FROM t WHERE id IN (?)"
    assert view.sample_count == 2
    assert view.total_calls == 4
    assert view.total_time == pytest.approx(50.0)
    assert view.mean_time == pytest.approx(12.5)
    # The most recently refreshed sample represents the statement.
    assert view.representative_text == "SELECT * FROM t WHERE id IN (1, 2, 3, 4)"


@pytest.mark.asyncio
async def test_query_filters_by_window_search_and_triage() -> None:
    database_id = await create_monitored_database()
    old_id = await _observe(database_id, "SELECT * FROM audit_log WHERE id = 1", calls=1, total_time=1.0, at=T0)
    new_id = await _observe(
        database_id,
        "UPDATE stock_100% SET qty = 1",
        calls=1,
        total_time=1.0,
        at=T0 + timedelta(days=1),
    )
    other_db = await create_monitored_database(hostname="db-b.internal")
    await _observe(other_db, "SELECT * FROM audit_log WHERE id = 2", calls=1, total_time=1.0, at=T0)

    async with SessionLocal() as session:
        recent = await statements_repo.query_statements(
            session, database_id, StatementFilters(seen_from=T0 + timedelta(hours=1))
        )
        assert [view.id for view in recent] == [new_id]

        searched = await statements_repo.query_statements(session, database_id, StatementFilters(search="AUDIT_LOG"))
        assert [view.id for view in searched] == [old_id]

        # LIKE wildcards in the search term are matched literally.
        literal = await statements_repo.query_statements(session, database_id, StatementFilters(search="100%"))
        assert [view.id for view in literal] == [new_id]
        wildcard = await statements_repo.query_statements(session, database_id, StatementFilters(search="a_d"))
        assert wildcard == []

        ordered = await statements_repo.query_statements(session, database_id)
        assert [view.id for view in ordered] == [new_id, old_id]

        await statements_repo.set_triage(session, old_id, known=True)
        await session.commit()
        unknown = await statements_repo.query_statements(session, database_id, StatementFilters(known=False))
        assert [view.id for view in unknown] == [new_id]


@pytest.mark.asyncio
async def test_triage_groups_are_scoped_to_their_database() -> None:
    database_id = await create_monitored_database()
    other_db = await create_monitored_database(hostname="db-b.internal")
    statement_id = await _observe(database_id, "SELECT 1", calls=1, total_time=1.0, at=T0)

    async with SessionLocal() as session:
        group = await groups_repo.create_group(session, database_id=database_id, name="reporting")
        foreign = await groups_repo.create_group(session, database_id=other_db, name="elsewhere")
        await session.commit()

        row = await statements_repo.set_triage(session, statement_id, group_id=group.id)
        assert row.group_id == group.id
        with pytest.raises(StatementGroupNotFoundError):
            await statements_repo.set_triage(session, statement_id, group_id=foreign.id)
        with pytest.raises(StatementNotFoundError):
            await statements_repo.set_triage(session, "missing", known=True)
        await session.commit()

        grouped = await statements_repo.query_statements(session, database_id, StatementFilters(group_id=group.id))
        assert [view.id for view in grouped] == [statement_id]
        ungrouped = await statements_repo.query_statements(session, database_id, StatementFilters(ungrouped=True))
        assert ungrouped == []

        # Clearing the group with an explicit None, leaving is_known untouched.
        row = await statements_repo.set_triage(session, statement_id, group_id=None)
        assert row.group_id is None
        assert row.is_known is False


@pytest.mark.asyncio
async def test_deleting_a_group_clears_statement_references() -> None:
    database_id = await create_monitored_database()
    statement_id = await _observe(database_id, "SELECT 1", calls=1, total_time=1.0, at=T0)
    async with SessionLocal() as session:
        group = await groups_repo.create_group(session, database_id=database_id, name="batch")
        await statements_repo.set_triage(session, statement_id, group_id=group.id, known=True)
        await session.commit()

        assert await groups_repo.delete_group(session, group.id) is True
        await session.commit()
        assert await groups_repo.delete_group(session, group.id) is False

    async with SessionLocal() as session:
        row = await statements_repo.get_statement(session, statement_id)
        assert row is not None
        assert row.group_id is None
        assert row.is_known is True

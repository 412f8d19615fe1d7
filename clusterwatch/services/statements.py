from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any

from clusterwatch.core.errors import DatabaseNotFoundError, StatementGroupNotFoundError
from clusterwatch.domain.models import CanonicalStatement, StatementGroup
from clusterwatch.persistence.db import SessionLocal
from clusterwatch.persistence.repos import clusters as clusters_repo
from clusterwatch.persistence.repos import groups as groups_repo
from clusterwatch.persistence.repos import statements as statements_repo
from clusterwatch.persistence.repos.statements import UNSET, CanonicalStatementView, StatementFilters


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatementGroupView:
    id: str
    database_id: str
    name: str
    description: str | None
    created_at: datetime | None


@dataclass(frozen=True)
class TriageView:
    id: str
    database_id: str
    is_known: bool
    group_id: str | None


def _group_view(group: StatementGroup) -> StatementGroupView:
    return StatementGroupView(
        id=group.id,
        database_id=group.database_id,
        name=group.name,
        description=group.description,
        created_at=group.created_at,
    )


def _triage_view(row: CanonicalStatement) -> TriageView:
    return TriageView(id=row.id, database_id=row.database_id, is_known=row.is_known, group_id=row.group_id)


async def query_canonical_statements(
    database_id: str,
    filters: StatementFilters | None = None,
) -> list[CanonicalStatementView]:
    async with SessionLocal() as session:
        return await statements_repo.query_statements(session, database_id, filters)


async def set_triage(
    canonical_id: str,
    *,
    known: bool | None = UNSET,
    group_id: str | None = UNSET,
) -> TriageView:
    async with SessionLocal() as session:
        row = await statements_repo.set_triage(session, canonical_id, known=known, group_id=group_id)
        await session.commit()
        logger.info(
            "statement_triaged canonical_id=%s is_known=%s group_id=%s",
            canonical_id,
            row.is_known,
            row.group_id,
        )
        return _triage_view(row)


async def create_statement_group(
    database_id: str,
    *,
    name: str,
    description: str | None = None,
) -> StatementGroupView:
    name = (name or "").strip()
    if not name:
        raise ValueError("statement group name is required")
    async with SessionLocal() as session:
        if await clusters_repo.get_database_with_instance(session, database_id) is None:
            raise DatabaseNotFoundError(f"database {database_id} not found")
        group = await groups_repo.create_group(session, database_id=database_id, name=name, description=description)
        await session.commit()
        await session.refresh(group)
        return _group_view(group)


async def list_statement_groups(database_id: str) -> list[StatementGroupView]:
    async with SessionLocal() as session:
        return [_group_view(group) for group in await groups_repo.list_groups(session, database_id)]


async def delete_statement_group(group_id: str) -> None:
    async with SessionLocal() as session:
        deleted = await groups_repo.delete_group(session, group_id)
        if not deleted:
            raise StatementGroupNotFoundError(f"statement group {group_id} not found")
        await session.commit()
        logger.info("statement_group_deleted group_id=%s", group_id)


def filters_from_params(params: dict[str, Any]) -> StatementFilters:
    """Build filters from loosely-typed transport parameters.

    ``group_id="ungrouped"`` selects statements without a group, and
    ``known`` accepts booleans or the strings "true"/"false".
    """
    group_id = params.get("group_id")
    known = params.get("known")
    if isinstance(known, str):
        known = {"true": True, "false": False}.get(known.strip().lower())
    return StatementFilters(
        seen_from=params.get("seen_from"),
        seen_to=params.get("seen_to"),
        search=params.get("search"),
        known=known,
        group_id=None if group_id == "ungrouped" else group_id,
        ungrouped=group_id == "ungrouped",
        limit=int(params.get("limit") or 100),
        offset=int(params.get("offset") or 0),
    )

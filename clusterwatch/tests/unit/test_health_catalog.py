from __future__ import annotations

import pytest
from sqlalchemy import update

from clusterwatch.domain.models import HealthCheckDefinition
from clusterwatch.persistence.db import SessionLocal
from clusterwatch.services.health.catalog import (
    DATABASE_SCOPES,
    DEFAULT_HEALTH_CHECKS,
    INSTANCE_SCOPES,
    WARN_WHEN,
    ensure_default_health_checks,
    load_active_catalog,
)


def test_default_catalog_is_well_formed() -> None:
    keys = [spec.key for spec in DEFAULT_HEALTH_CHECKS]
    assert len(keys) == len(set(keys))
    for spec in DEFAULT_HEALTH_CHECKS:
        assert spec.instance_scope in INSTANCE_SCOPES
        assert spec.database_scope in DATABASE_SCOPES
        assert spec.warn_when in WARN_WHEN
        assert spec.query.strip().upper().startswith("SELECT")
        # Queries run through the driver directly; keep them free of bind-style markers.
        assert "%" not in spec.query


@pytest.mark.asyncio
async def test_seeding_is_idempotent_and_ordered() -> None:
    async with SessionLocal() as session:
        assert await ensure_default_health_checks(session) == len(DEFAULT_HEALTH_CHECKS)
        assert await ensure_default_health_checks(session) == 0
        catalog = await load_active_catalog(session)
    assert [definition.key for definition in catalog] == [
        spec.key for spec in sorted(DEFAULT_HEALTH_CHECKS, key=lambda spec: (spec.display_order, spec.key))
    ]


@pytest.mark.asyncio
async def test_deactivated_definitions_are_not_reseeded_or_loaded() -> None:
    async with SessionLocal() as session:
        await ensure_default_health_checks(session)
        await session.execute(
            update(HealthCheckDefinition).where(HealthCheckDefinition.key == "unused_indexes").values(active=False)
        )
        await session.commit()
        assert await ensure_default_health_checks(session) == 0
        keys = [definition.key for definition in await load_active_catalog(session)]
    assert "unused_indexes" not in keys
    assert len(keys) == len(DEFAULT_HEALTH_CHECKS) - 1

"""Entity sources: read access to the records rules are evaluated against.

SqlEntitySource reads tenant-scoped rows from the platform tables configured in
Settings.entity_tables (``{"loan": "loans"}`` by default). The policy engine
never writes to those tables.

InMemoryEntitySource serves fixed records and backs local development and tests.
"""

import uuid
from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import String, Uuid, cast, column, select, table, text
from sqlalchemy.ext.asyncio import AsyncSession

from kontra_policy_engine.common.auth import TenantContext
from kontra_policy_engine.common.errors import ValidationError
from kontra_policy_engine.common.observability import get_logger

logger = get_logger(__name__)


def to_jsonable(value: Any) -> Any:
    """Convert database values into JSON-safe values.

    Dates become ISO strings, Decimals floats, UUIDs strings; mappings and
    lists are converted recursively.
    """
    if isinstance(value, Mapping):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


class SqlEntitySource:
    """IEntitySource over the platform's own tables.

    Args:
        session: An async session bound to the database holding the entity tables.
        entity_tables: Entity type to table name, e.g. ``{"loan": "loans"}``.
        tenant_column: Column holding the owning tenant (org) UUID.
        id_column: Primary key column of every entity table.
    """

    def __init__(
        self,
        session: AsyncSession,
        entity_tables: Mapping[str, str],
        tenant_column: str = "org_id",
        id_column: str = "id",
    ) -> None:
        self._session = session
        self._entity_tables = dict(entity_tables)
        self._tenant_column = tenant_column
        self._id_column = id_column

    def _table(self, entity_type: str) -> Any:
        table_name = self._entity_tables.get(entity_type)
        if table_name is None:
            raise ValidationError(
                message=f"No entity table is configured for entity type '{entity_type}'",
                field="entity_type",
            )
        return table(table_name, column(self._tenant_column, Uuid), column(self._id_column))

    def _to_entity(self, row: Mapping[str, Any]) -> dict[str, Any]:
        entity = to_jsonable(row)
        entity.setdefault("id", entity.get(self._id_column))
        return entity

    async def list_entities(self, tenant: TenantContext, entity_type: str) -> list[Mapping[str, Any]]:
        """Return every entity of ``entity_type`` owned by the tenant.

        Raises:
            ValidationError: If no table is configured for ``entity_type``.
        """
        entity_table = self._table(entity_type)
        stmt = (
            select(text("*"))
            .select_from(entity_table)
            .where(entity_table.c[self._tenant_column] == tenant.tenant_id)
        )
        result = await self._session.execute(stmt)
        entities = [self._to_entity(row) for row in result.mappings().all()]
        logger.debug(
            "Loaded entities",
            tenant_id=str(tenant.tenant_id),
            entity_type=entity_type,
            count=len(entities),
        )
        return entities

    async def get_entity(
        self,
        tenant: TenantContext,
        entity_type: str,
        entity_id: str,
    ) -> Mapping[str, Any] | None:
        """Return one entity by ID, or None when the tenant has no such entity."""
        entity_table = self._table(entity_type)
        stmt = (
            select(text("*"))
            .select_from(entity_table)
            .where(
                entity_table.c[self._tenant_column] == tenant.tenant_id,
                cast(entity_table.c[self._id_column], String) == str(entity_id),
            )
            .limit(1)
        )
        result = await self._session.execute(stmt)
        row = result.mappings().first()
        return self._to_entity(row) if row is not None else None


class InMemoryEntitySource:
    """IEntitySource backed by a dict of records per (tenant, entity type)."""

    def __init__(self, entities: Mapping[tuple[uuid.UUID, str], list[Mapping[str, Any]]] | None = None) -> None:
        self._entities: dict[tuple[uuid.UUID, str], list[Mapping[str, Any]]] = {
            key: list(rows) for key, rows in (entities or {}).items()
        }

    def add(self, tenant_id: uuid.UUID, entity_type: str, entity: Mapping[str, Any]) -> None:
        self._entities.setdefault((tenant_id, entity_type), []).append(entity)

    async def list_entities(self, tenant: TenantContext, entity_type: str) -> list[Mapping[str, Any]]:
        return list(self._entities.get((tenant.tenant_id, entity_type), []))

    async def get_entity(
        self,
        tenant: TenantContext,
        entity_type: str,
        entity_id: str,
    ) -> Mapping[str, Any] | None:
        for entity in self._entities.get((tenant.tenant_id, entity_type), []):
            if str(entity.get("id")) == str(entity_id):
                return entity
        return None

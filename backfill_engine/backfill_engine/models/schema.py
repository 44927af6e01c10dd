"""Schema metadata consumed by the planner.

The planner never talks to the store directly.  It operates on a pre-loaded
:class:`SchemaCatalog` built either from a schema file
(:mod:`backfill_engine.loader.schema_loader`) or from live introspection
(:mod:`backfill_engine.executor.schema_introspector`).
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from backfill_engine.models.plan import TargetDescriptor


class ColumnInfo(BaseModel):
    """A single column of a table."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, description="Column name.")
    type: str = Field(..., min_length=1, description="Column type as reported by the store.")


class TableMetadata(BaseModel):
    """Columns, ordering key, and per-table backfill settings of a table."""

    model_config = ConfigDict(extra="forbid")

    database: str
    name: str
    columns: list[ColumnInfo] = Field(default_factory=list)
    order_by: list[str] = Field(default_factory=list)
    time_column: str | None = Field(
        default=None,
        description="Schema-level time column override for backfills of this table.",
    )

    @property
    def qualified(self) -> str:
        return f"{self.database}.{self.name}"

    def column(self, name: str) -> ColumnInfo | None:
        for col in self.columns:
            if col.name == name:
                return col
        return None


class MaterializedViewMetadata(BaseModel):
    """A materialized view that writes into a destination table."""

    model_config = ConfigDict(extra="forbid")

    database: str
    name: str
    to_database: str
    to_table: str
    select_sql: str = Field(..., min_length=1, description="The view's stored SELECT.")

    @property
    def qualified(self) -> str:
        return f"{self.database}.{self.name}"

    def writes_to(self, target: TargetDescriptor) -> bool:
        return self.to_database == target.database and self.to_table == target.table


class SchemaCatalog(BaseModel):
    """All table and materialized-view metadata known to the planner."""

    model_config = ConfigDict(extra="forbid")

    tables: list[TableMetadata] = Field(default_factory=list)
    materialized_views: list[MaterializedViewMetadata] = Field(default_factory=list)

    def find_table(self, database: str, name: str) -> TableMetadata | None:
        for table in self.tables:
            if table.database == database and table.name == name:
                return table
        return None

    def find_view_for_destination(self, target: TargetDescriptor) -> MaterializedViewMetadata | None:
        """Return the first view (by qualified name) whose destination is *target*."""
        matches = sorted(
            (v for v in self.materialized_views if v.writes_to(target)),
            key=lambda v: v.qualified,
        )
        return matches[0] if matches else None

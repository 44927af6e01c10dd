"""Abstract interface for the analytical store.

The execution engine and the schema introspector only depend on the
:class:`StoreClient` protocol, so tests can drive them with an in-memory
fake and production wires in :class:`ClickHouseStoreClient`.
"""

from __future__ import annotations

from typing import Any, Protocol


class StoreClient(Protocol):
    """Structural interface for store connections.

    Implementations are **not** required to subclass this protocol; they only
    need to expose methods with matching signatures (duck typing).
    """

    def execute(self, sql: str, settings: dict[str, Any] | None = None) -> int | None:
        """Run a statement that returns no rows.

        Parameters
        ----------
        sql:
            The rendered statement.
        settings:
            Query-level settings such as ``insert_deduplication_token``.

        Returns
        -------
        int | None
            Rows written, when the store reports it.
        """
        ...

    def query(self, sql: str, settings: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Run a SELECT and return its rows as column-name keyed dicts."""
        ...

    def close(self) -> None:
        """Release the underlying connection."""
        ...

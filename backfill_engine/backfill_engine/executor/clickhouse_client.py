"""ClickHouse implementation of :class:`~backfill_engine.executor.base.StoreClient`.

Wraps a ``clickhouse_connect`` HTTP client.  Statements without result rows
go through ``Client.command`` so the server's written-row summary can be
reported back to the engine.
"""

from __future__ import annotations

import logging
from typing import Any

import clickhouse_connect
from clickhouse_connect.driver.client import Client as CHClient

from backfill_engine.config import ClickHouseConfig

logger = logging.getLogger(__name__)


class ClickHouseStoreClient:
    """Store client backed by ``clickhouse_connect``.

    Parameters
    ----------
    client:
        An already-connected ``clickhouse_connect`` client.  Use
        :meth:`from_config` to build one from settings.
    """

    def __init__(self, client: CHClient) -> None:
        self._client = client

    @classmethod
    def from_config(cls, config: ClickHouseConfig) -> ClickHouseStoreClient:
        kwargs: dict[str, Any] = {
            "host": config.host,
            "username": config.username,
            "database": config.database,
            "secure": config.secure,
        }
        if config.port is not None:
            kwargs["port"] = config.port
        if config.password is not None:
            kwargs["password"] = config.password.get_secret_value()

        logger.debug("Connecting to ClickHouse at %s (database=%s)", config.host, config.database)
        return cls(clickhouse_connect.get_client(**kwargs))

    def execute(self, sql: str, settings: dict[str, Any] | None = None) -> int | None:
        result = self._client.command(sql, settings=settings or None)
        written = getattr(result, "written_rows", None)
        if written is None:
            return None
        try:
            return int(written)
        except (TypeError, ValueError):
            return None

    def query(self, sql: str, settings: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        result = self._client.query(sql, settings=settings or None)
        return list(result.named_results())

    def close(self) -> None:
        self._client.close()

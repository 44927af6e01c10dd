"""Unit tests for backfill_engine.executor.clickhouse_client."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from backfill_engine.config import ClickHouseConfig
from backfill_engine.executor.clickhouse_client import ClickHouseStoreClient


class TestFromConfig:
    @patch("backfill_engine.executor.clickhouse_client.clickhouse_connect.get_client")
    def test_passes_connection_settings(self, get_client):
        config = ClickHouseConfig(
            host="ch",
            port=8443,
            username="etl",
            password="s3cret",
            database="analytics",
            secure=True,
        )
        ClickHouseStoreClient.from_config(config)
        get_client.assert_called_once_with(
            host="ch",
            port=8443,
            username="etl",
            password="s3cret",
            database="analytics",
            secure=True,
        )

    @patch("backfill_engine.executor.clickhouse_client.clickhouse_connect.get_client")
    def test_omits_unset_port_and_password(self, get_client):
        ClickHouseStoreClient.from_config(ClickHouseConfig())
        kwargs = get_client.call_args.kwargs
        assert "port" not in kwargs
        assert "password" not in kwargs


class TestExecute:
    def test_reports_written_rows(self):
        raw = MagicMock()
        raw.command.return_value = SimpleNamespace(written_rows="42")
        client = ClickHouseStoreClient(raw)

        rows = client.execute("INSERT INTO db.t SELECT 1", settings={"async_insert": 0})

        assert rows == 42
        raw.command.assert_called_once_with("INSERT INTO db.t SELECT 1", settings={"async_insert": 0})

    def test_unknown_row_count(self):
        raw = MagicMock()
        raw.command.return_value = "OK"
        assert ClickHouseStoreClient(raw).execute("SYSTEM FLUSH LOGS") is None

    def test_errors_propagate(self):
        raw = MagicMock()
        raw.command.side_effect = RuntimeError("Code: 60. Table does not exist")
        client = ClickHouseStoreClient(raw)
        with pytest.raises(RuntimeError, match="Code: 60"):
            client.execute("INSERT INTO db.missing SELECT 1")


class TestQuery:
    def test_named_rows(self):
        raw = MagicMock()
        raw.query.return_value.named_results.return_value = iter([{"name": "events"}])
        assert ClickHouseStoreClient(raw).query("SELECT name FROM system.tables") == [{"name": "events"}]
        raw.query.assert_called_once_with("SELECT name FROM system.tables", settings=None)

    def test_close(self):
        raw = MagicMock()
        ClickHouseStoreClient(raw).close()
        raw.close.assert_called_once()

"""Schema metadata loaders."""

from backfill_engine.loader.schema_loader import load_schema_file, parse_schema_document

__all__ = ["load_schema_file", "parse_schema_document"]

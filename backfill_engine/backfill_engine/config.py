"""Layered configuration for backfill planning and execution.

Settings are assembled from four layers, later layers winning:

1. model defaults (:class:`BackfillSettings` field defaults),
2. a TOML config file (``[backfill]`` table, or the top level of the file),
3. environment variables with the ``BACKFILL_`` prefix (``__`` separates
   nested keys, e.g. ``BACKFILL_POLICY__BLOCK_OVERLAPPING_RUNS=false``),
4. command-line flags.

Each layer is read by its own function and produces a plain ``dict``; the
dicts are deep-merged and validated exactly once.  Unknown keys are rejected
instead of being carried along untyped.
"""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from backfill_engine.errors import SettingsError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path("tidefill.toml")


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


class DefaultsConfig(BaseModel):
    """Default planning and execution knobs."""

    model_config = ConfigDict(extra="forbid")

    chunk_hours: float = Field(default=6.0, gt=0, description="Hours per chunk when --chunk-hours is omitted.")
    max_parallel_chunks: int = Field(
        default=1,
        ge=1,
        description="Accepted for forward compatibility; chunks are always dispatched sequentially.",
    )
    max_retries_per_chunk: int = Field(default=3, ge=1, description="Attempts per chunk before it is exhausted.")
    retry_delay_ms: int = Field(default=1000, ge=0, description="Base delay for exponential backoff.")
    max_retry_delay_ms: int = Field(default=60_000, ge=0, description="Upper bound on a single backoff sleep.")
    require_idempotency_token: bool = Field(
        default=True,
        description="Attach insert_deduplication_token to every chunk statement.",
    )
    time_column: str | None = Field(default=None, description="Global default time column.")
    implicit_window_hours: float = Field(
        default=24.0,
        gt=0,
        description="Window length used when no window is given and explicit windows are not required.",
    )


class PolicyConfig(BaseModel):
    """Safety preconditions, each independently switchable."""

    model_config = ConfigDict(extra="forbid")

    require_dry_run_before_run: bool = True
    require_explicit_window: bool = True
    block_overlapping_runs: bool = True
    fail_check_on_required_pending: bool = True


class LimitsConfig(BaseModel):
    """Hard bounds on window and chunk sizes."""

    model_config = ConfigDict(extra="forbid")

    max_window_hours: float = Field(default=24 * 30, gt=0)
    min_chunk_minutes: float = Field(default=15, gt=0)


class ClickHouseConfig(BaseModel):
    """Connection parameters for the store client."""

    model_config = ConfigDict(extra="forbid")

    host: str = "localhost"
    port: int | None = None
    username: str = "default"
    password: SecretStr | None = None
    database: str = "default"
    secure: bool = False

    @field_validator("password", mode="before")
    @classmethod
    def mask_password_in_repr(cls, v: str | SecretStr | None) -> SecretStr | None:
        if v is None:
            return None
        if isinstance(v, SecretStr):
            return v
        return SecretStr(v)


class BackfillSettings(BaseModel):
    """The single validated result of merging every configuration layer."""

    model_config = ConfigDict(extra="forbid")

    state_dir: Path = Path(".tidefill/backfill")
    schema_file: Path | None = None
    structured_logging: bool = False
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    clickhouse: ClickHouseConfig = Field(default_factory=ClickHouseConfig)

    @model_validator(mode="after")
    def validate_chunk_against_limits(self) -> BackfillSettings:
        if self.defaults.chunk_hours * 60 < self.limits.min_chunk_minutes:
            raise ValueError(
                f"defaults.chunk_hours ({self.defaults.chunk_hours}) must be >= "
                f"limits.min_chunk_minutes ({self.limits.min_chunk_minutes}m)."
            )
        return self


# ---------------------------------------------------------------------------
# Layers
# ---------------------------------------------------------------------------


class _EnvironmentLayer(BaseSettings):
    """Raw values found in ``BACKFILL_*`` environment variables.

    Sections are kept as loose dicts here; typing and unknown-key rejection
    happen once, when the merged layers are validated.
    """

    model_config = SettingsConfigDict(
        env_prefix="BACKFILL_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    state_dir: str | None = None
    schema_file: str | None = None
    structured_logging: bool | None = None
    defaults: dict[str, Any] | None = None
    policy: dict[str, Any] | None = None
    limits: dict[str, Any] | None = None
    clickhouse: dict[str, Any] | None = None


def read_file_layer(path: Path | None) -> dict[str, Any]:
    """Load the TOML config file layer.

    A missing *path* (``None``) falls back to :data:`DEFAULT_CONFIG_FILE` when
    it exists; an explicitly named file that does not exist is an error.
    """
    if path is None:
        if not DEFAULT_CONFIG_FILE.exists():
            return {}
        path = DEFAULT_CONFIG_FILE
    elif not path.exists():
        raise SettingsError(f"Config file not found: {path}")

    try:
        with open(path, "rb") as fh:
            data = tomllib.load(fh)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise SettingsError(f"Cannot read config file {path}: {exc}") from exc

    section = data.get("backfill", data)
    if not isinstance(section, dict):
        raise SettingsError(f"Config file {path}: [backfill] must be a table.")
    logger.debug("Loaded config file layer from %s", path)
    return section


def read_environment_layer() -> dict[str, Any]:
    """Collect ``BACKFILL_*`` environment overrides."""
    return _EnvironmentLayer().model_dump(exclude_none=True)


def merge_layers(*layers: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge configuration dicts; later layers win key by key."""
    merged: dict[str, Any] = {}
    for layer in layers:
        for key, value in layer.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = merge_layers(merged[key], value)
            else:
                merged[key] = value
    return merged


def validate_settings(raw: dict[str, Any]) -> BackfillSettings:
    """Validate merged layers, converting pydantic errors to :class:`SettingsError`."""
    try:
        return BackfillSettings.model_validate(raw)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" if err.get("loc") else err["msg"]
            for err in exc.errors()
        )
        raise SettingsError(f"Invalid backfill settings: {problems}") from exc


def load_settings(
    config_file: Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> BackfillSettings:
    """Load settings from file, environment, and flag overrides."""
    settings = validate_settings(
        merge_layers(
            read_file_layer(config_file),
            read_environment_layer(),
            overrides or {},
        )
    )
    logger.debug("Backfill state directory: %s", settings.state_dir)
    return settings

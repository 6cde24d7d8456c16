from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import BeforeValidator, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = Path(".ytpm")
# Fields that live under `data_dir` unless set explicitly.
DATA_DIR_CHILDREN: dict[str, Path] = {
    "db_path": Path("state.db"),
    "log_dir": Path("logs"),
}

_TRUE_WORDS = frozenset({"1", "true", "yes", "on"})
_FALSE_WORDS = frozenset({"0", "false", "no", "off"})


def _to_bool(value: Any) -> Any:
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    return value


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip() or None
    return value


def _expand_path(value: Any) -> Any:
    if isinstance(value, str | Path):
        return Path(value).expanduser()
    return value


EnvBool = Annotated[bool, BeforeValidator(_to_bool)]
OptionalText = Annotated[str | None, BeforeValidator(_blank_to_none)]
EnvPath = Annotated[Path, BeforeValidator(_expand_path)]


class AppSettings(BaseSettings):
    """Runtime configuration, read from `YTPM_*` variables and `.env`.

    Use `load_settings()` rather than instantiating directly so that
    data-directory defaults and path resolution are applied.
    """

    model_config = SettingsConfigDict(
        env_prefix="YTPM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    data_dir: EnvPath = Field(
        default=DEFAULT_DATA_DIR,
        description="Root directory for the SQLite database, logs and the scheduler lock.",
    )
    db_path: EnvPath = Field(
        default=DEFAULT_DATA_DIR / DATA_DIR_CHILDREN["db_path"],
        description="SQLite database file. Defaults to `${YTPM_DATA_DIR}/state.db`.",
    )

    youtube_daily_quota_limit: int = Field(
        default=10_000,
        ge=1,
        description="YouTube Data API units each user may spend per UTC day.",
    )
    export_quota_ceiling_percent: float = Field(
        default=0.8,
        description=(
            "Share of the daily limit export batches may spend; the remainder is "
            "kept for interactive use. Must be in (0, 1]."
        ),
    )
    export_required_units_per_batch: int = Field(
        default=2,
        ge=0,
        description="Units that must remain before a batch fetches a page (list + details).",
    )

    auto_resume_pause_seconds: int = Field(
        default=8 * 60 * 60,
        ge=1,
        description="Cooldown after auto-resume hits the quota ceiling for a user.",
    )
    auto_resume_max_batches_per_run: int = Field(
        default=15,
        ge=1,
        description="Upper bound on per-user batches in one auto-resume cycle.",
    )
    auto_resume_poll_interval_seconds: int = Field(
        default=30 * 60,
        ge=1,
        description="Seconds between in-process auto-resume cycles.",
    )
    scheduler_enabled: EnvBool = Field(
        default=True,
        validation_alias="YTPM_ENABLE_SCHEDULER",
        description="Run auto-resume cycles in-process (`YTPM_ENABLE_SCHEDULER`).",
    )
    cron_secret: OptionalText = Field(
        default=None,
        description="Secret accepted as `Authorization: Bearer <secret>` on the cron route.",
    )
    cron_trusted_header: OptionalText = Field(
        default="x-vercel-id",
        description=(
            "Header the hosting platform's cron runner sets; its presence authorizes "
            "the cron route. Blank disables header trust."
        ),
    )

    storage_retry_attempts: int = Field(
        default=2,
        ge=1,
        le=10,
        description="Attempts per storage operation when SQLite reports it is locked or busy.",
    )
    storage_retry_backoff_seconds: float = Field(
        default=0.05,
        ge=0.0,
        description="Initial exponential backoff between storage attempts.",
    )

    log_dir: EnvPath = Field(
        default=DEFAULT_DATA_DIR / DATA_DIR_CHILDREN["log_dir"],
        description="Log file directory. Defaults to `${YTPM_DATA_DIR}/logs`.",
    )
    log_level: str = Field(default="INFO", description="Console log level.")

    telemetry_enabled: EnvBool = Field(
        default=True,
        description="Emit internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description="`log` writes telemetry to its own JSON log file; `none` drops it.",
    )

    @field_validator("export_quota_ceiling_percent")
    @classmethod
    def _check_ceiling(cls, value: float) -> float:
        if not 0.0 < value <= 1.0:
            raise ValueError("YTPM_EXPORT_QUOTA_CEILING_PERCENT must be in (0, 1].")
        return value

    @field_validator("cron_trusted_header")
    @classmethod
    def _lowercase_header(cls, value: str | None) -> str | None:
        return value.lower() if value is not None else None

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _check_sink(cls, value: Any) -> Any:
        normalized = value.strip().lower() if isinstance(value, str) else value
        if normalized not in ("none", "log"):
            raise ValueError("YTPM_TELEMETRY_SINK must be one of: none, log.")
        return normalized


def load_settings() -> AppSettings:
    settings = AppSettings()
    updates: dict[str, Path] = {
        name: settings.data_dir / child
        for name, child in DATA_DIR_CHILDREN.items()
        if name not in settings.model_fields_set
    }
    resolved = settings.model_copy(update=updates)
    return resolved.model_copy(
        update={
            name: getattr(resolved, name).resolve()
            for name in ("data_dir", *DATA_DIR_CHILDREN)
        }
    )

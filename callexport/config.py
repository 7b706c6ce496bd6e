"""
Configuration for callexport.

``Settings`` uses Pydantic Settings to load environment variables (and ``.env``)
for database credentials, logging and export defaults. ``ExportConfig`` is the
validated description of one export job; the CLI builds it from command-line
options layered over ``Settings``.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from callexport.domain.models import (
    DelimiterConfig,
    FieldSchema,
    MalformedPolicy,
    RetryPolicy,
)


class Settings(BaseSettings):
    # Database
    db_host: str = Field("localhost", alias="DB_HOST")
    db_port: int = Field(5432, alias="DB_PORT")
    db_user: str = Field("postgres", alias="DB_USER")
    db_password: str = Field("postgres", alias="DB_PASSWORD")
    db_name: str = Field("callexport", alias="DB_NAME")

    # Application
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    # Export defaults
    export_batch_size: int = Field(100, alias="EXPORT_BATCH_SIZE", ge=1, le=10_000)
    export_parallelism: int = Field(1, alias="EXPORT_PARALLELISM", ge=1)
    export_max_retries: int = Field(3, alias="EXPORT_MAX_RETRIES", ge=0)
    export_retry_backoff_seconds: float = Field(0.5, alias="EXPORT_RETRY_BACKOFF_SECONDS", ge=0)
    export_retry_backoff_max_seconds: float = Field(
        10.0, alias="EXPORT_RETRY_BACKOFF_MAX_SECONDS", ge=0
    )
    export_statement_timeout_ms: int = Field(0, alias="EXPORT_STATEMENT_TIMEOUT_MS", ge=0)
    export_malformed_policy: MalformedPolicy = Field(
        MalformedPolicy.ABORT, alias="EXPORT_MALFORMED_POLICY"
    )
    export_fail_fast: bool = Field(False, alias="EXPORT_FAIL_FAST")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


class ExportConfig(BaseModel):
    """
    Everything the coordinator needs to run one export job.

    ``field_schema`` may be left empty, in which case it is introspected from
    the procedure's declared parameters.
    """

    procedure: str = Field(..., min_length=1)
    export_dir: Path
    dsn: str
    field_schema: Optional[FieldSchema] = None
    delimiters: DelimiterConfig = DelimiterConfig()
    batch_size: int = Field(100, ge=1, le=10_000)
    parallelism: int = Field(1, ge=1)
    malformed_policy: MalformedPolicy = MalformedPolicy.ABORT
    fail_fast: bool = False
    retry: RetryPolicy = RetryPolicy()
    statement_timeout_ms: int = Field(0, ge=0)
    log_level: str = "INFO"
    log_json: bool = False

    model_config = {"frozen": True}

    @classmethod
    def from_settings(
        cls, settings: Settings, procedure: str, export_dir: Path | str, **overrides: Any
    ) -> "ExportConfig":
        """Build a config from settings defaults; ``None`` overrides are ignored."""
        from callexport.infrastructure.db_factory import build_dsn

        values: dict[str, Any] = {
            "procedure": procedure,
            "export_dir": Path(export_dir),
            "dsn": build_dsn(settings),
            "batch_size": settings.export_batch_size,
            "parallelism": settings.export_parallelism,
            "malformed_policy": settings.export_malformed_policy,
            "fail_fast": settings.export_fail_fast,
            "retry": RetryPolicy(
                max_retries=settings.export_max_retries,
                backoff_seconds=settings.export_retry_backoff_seconds,
                backoff_max_seconds=settings.export_retry_backoff_max_seconds,
            ),
            "statement_timeout_ms": settings.export_statement_timeout_ms,
            "log_level": settings.log_level,
            "log_json": settings.log_json,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)


__all__ = ["ExportConfig", "Settings", "get_settings"]

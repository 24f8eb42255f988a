"""Application configuration using Pydantic settings."""
from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PipelineTuning(BaseModel):
    max_refinement_iterations: int = Field(default=5, ge=1, le=20)
    validator_transport_retries: int = Field(default=1, ge=0, le=5)
    publish_with_residual_defects: bool = True
    inject_system_nodes: bool = True
    rewrite_dangling_targets: bool = False
    failed_row_max_chars: int = 500
    sample_defect_messages: int = 2
    default_environment: Literal["sandbox", "production"] = "sandbox"

    generate_timeout_s: float = 180.0
    validate_timeout_s: float = 60.0
    repair_timeout_s: float = 180.0
    registry_timeout_s: float = 20.0
    publish_timeout_s: float = 120.0
    preview_timeout_s: float = 45.0
    export_timeout_s: float = 45.0

    model_config = SettingsConfigDict(populate_by_name=True)


class ObservabilitySettings(BaseModel):
    otel_service_name: str = "botbuilder"
    otel_exporter_otlp_endpoint: str | None = None
    log_level: str = "INFO"


class IntegrationSettings(BaseModel):
    oracle_url: str = Field(
        default="http://localhost:8787/api/generate-flow",
        description="Generation oracle endpoint (initial generation and repair)",
    )
    oracle_api_key: str = Field(default="", description="API key for the generation oracle")
    bot_manager_url: str = Field(
        default="http://localhost:8787/api/botmanager",
        description="Base URL of the compiler/hosting API (validate, upload, create-channel)",
    )
    script_registry_url: str = Field(
        default="http://localhost:8787/functions/v1/action-scripts",
        description="Remote action script registry",
    )
    exporter_url: str = Field(
        default="http://localhost:8787/api/export-sheet",
        description="Spreadsheet export endpoint",
    )


class StorageSettings(BaseModel):
    database_url: str = Field(
        default="sqlite+aiosqlite:///./botbuilder.db",
        description="SQLAlchemy async database URL (Postgres 15 in production)",
    )
    artifact_dir: str = "./.artifacts"
    s3_endpoint: str | None = None
    s3_region: str | None = None
    s3_bucket: str | None = None


class BuilderSettings(BaseSettings):
    tuning: PipelineTuning = PipelineTuning()
    observability: ObservabilitySettings = ObservabilitySettings()
    integrations: IntegrationSettings = IntegrationSettings()
    storage: StorageSettings = StorageSettings()
    environment: Literal["dev", "qa", "prod"] | str = "dev"

    model_config = SettingsConfigDict(env_nested_delimiter="__", env_prefix="BOTBUILDER_", case_sensitive=False)


@lru_cache(maxsize=1)
def get_settings(**kwargs: Any) -> BuilderSettings:
    """Return cached settings instance."""
    return BuilderSettings(**kwargs)


__all__ = ["BuilderSettings", "IntegrationSettings", "ObservabilitySettings", "PipelineTuning", "StorageSettings", "get_settings"]

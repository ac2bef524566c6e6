# src/config/settings.py — v1
"""Typed configuration loaded from .env via pydantic-settings.

Single source of truth for all deployment-specific settings: persistence,
object storage, generation and judge providers, retry budgets, logging.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when configuration is internally inconsistent."""


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # === PIPELINE STORE ===
    store_backend: Literal["sqlite"] = "sqlite"
    store_path: str = "~/.stagegate/pipelines.db"
    store_cas_max_retries: int = 5

    # === OBJECT STORAGE ===
    storage_backend: Literal["local", "s3"] = "local"
    storage_root: Path = Path("~/.stagegate/objects")
    storage_s3_bucket: str = ""
    storage_s3_prefix: str = "stagegate/"
    storage_s3_region: str = ""
    storage_s3_endpoint_url: str = ""
    signed_url_ttl_s: int = 3600

    # === PROVIDER KEYS ===
    google_api_key: str = ""
    openai_api_key: str = ""

    # === IMAGE GENERATION ===
    generation_provider: Literal["google"] = "google"
    generation_model: str = "gemini-2.5-flash-image"
    generation_timeout_s: float = 180.0

    # === QA JUDGE ===
    judge_provider: str = "google"
    judge_model: str = "gemini-2.5-pro"
    judge_timeout_s: float = 120.0
    judge_max_tokens: int = 2048

    # === SPACE ANALYSIS (step 0) ===
    analysis_provider: str = "google"
    analysis_model: str = "gemini-2.5-pro"
    analysis_max_tokens: int = 8192

    # === RETRY POLICY ===
    auto_retry_enabled: bool = True
    max_step_attempts: int = 5
    max_total_retries: int = 20
    panorama_max_attempts: int = 4
    max_output_count: int = 4

    # === QUALITY DEFAULTS ===
    default_quality_tier: Literal["1K", "2K", "4K"] = "2K"
    default_aspect_ratio: Literal["1:1", "4:3", "16:9", "2:1"] = "16:9"

    # === Logging ===
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Path | None = None
    log_rotation: str = "10MB"
    log_retention: int = 30

    # --- Validators ---

    @field_validator("store_cas_max_retries", "signed_url_ttl_s")
    @classmethod
    def validate_positive(cls, v: int) -> int:  # noqa: N805
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @model_validator(mode="after")
    def validate_config_consistency(self) -> Settings:
        """Validate cross-field consistency rules."""
        errors: list[str] = []

        if self.storage_backend == "s3" and not self.storage_s3_bucket:
            errors.append("STORAGE_BACKEND=s3 requires STORAGE_S3_BUCKET")

        if self.generation_timeout_s <= 0 or self.judge_timeout_s <= 0:
            errors.append("GENERATION_TIMEOUT_S and JUDGE_TIMEOUT_S must be > 0")

        if self.max_step_attempts < 1 or self.max_total_retries < 1:
            errors.append("MAX_STEP_ATTEMPTS and MAX_TOTAL_RETRIES must be >= 1")

        if self.panorama_max_attempts < 1:
            errors.append("PANORAMA_MAX_ATTEMPTS must be >= 1")

        if not 1 <= self.max_output_count <= 4:
            errors.append("MAX_OUTPUT_COUNT must be between 1 and 4")

        if errors:
            raise ConfigurationError("; ".join(errors))

        return self

    # --- Helpers ---

    @property
    def resolved_store_path(self) -> str:
        """Store path with ``~`` expanded (``:memory:`` passes through)."""
        if self.store_path == ":memory:":
            return self.store_path
        return str(Path(self.store_path).expanduser())


def load_settings(**overrides: object) -> Settings:
    """Load settings from .env with optional overrides.

    Args:
        **overrides: Field-level overrides (for testing or per-run config).

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If configuration is internally inconsistent.
    """
    return Settings(**overrides)  # type: ignore[arg-type]

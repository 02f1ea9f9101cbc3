from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
import os


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field(default="dev", validation_alias="APP_ENV")

    # Document store backend: "memory" (process-local, dev/tests) or "supabase".
    document_store: str = Field(default="memory", validation_alias="DOCUMENT_STORE")
    supabase_url: str | None = Field(default=None, validation_alias="SUPABASE_URL")
    supabase_key: str | None = Field(default=None, validation_alias="SUPABASE_KEY")
    # Ceiling on operations per batched write; larger writes are chunked.
    store_max_batch_ops: int = Field(default=500, validation_alias="STORE_MAX_BATCH_OPS")

    # Auto-fix tiering thresholds (calibrated against normalized Levenshtein similarity).
    autofix_high_confidence: float = Field(
        default=0.80, validation_alias="AUTOFIX_HIGH_CONFIDENCE"
    )
    autofix_min_score: float = Field(default=0.40, validation_alias="AUTOFIX_MIN_SCORE")
    autofix_clear_margin: float = Field(
        default=0.15, validation_alias="AUTOFIX_CLEAR_MARGIN"
    )

    # Raw upload ceiling for ingestion (bytes).
    max_upload_bytes: int = Field(
        default=5 * 1024 * 1024, validation_alias="MAX_UPLOAD_BYTES"
    )

    # Admin surface: disabled endpoints answer 404; enabled ones require X-Admin-Token.
    admin_api_enabled: bool = Field(default=False, validation_alias="ADMIN_API_ENABLED")
    admin_token: str | None = Field(default=None, validation_alias="ADMIN_TOKEN")

    metrics_enabled: bool = Field(default=False, validation_alias="METRICS_ENABLED")
    metrics_token: str | None = Field(default=None, validation_alias="METRICS_TOKEN")

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    allow_origins: list[str] = Field(default=["*"], validation_alias="ALLOW_ORIGINS")
    log_to_file: bool = Field(default=True, validation_alias="LOG_TO_FILE")
    log_file_path: str = Field(
        default=os.path.join("logs", "bundle_integrity.log"),
        validation_alias="LOG_FILE_PATH",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

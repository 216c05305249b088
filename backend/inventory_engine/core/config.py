"""Application configuration using pydantic-settings.

All environment variables should be accessed through the settings object
rather than using os.getenv() directly. Cache TTLs, deduction limits and
matching thresholds live here so every engine component is built from one
validated source.
"""

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars
    )

    # Database - defaults to relative path for Docker, override via env for local dev
    database_url: str = "sqlite:///./data/inventory.db"

    # Redis - optional, carries change notifications between processes
    redis_url: Optional[str] = None
    change_channel_prefix: str = "inventory-changes"

    # CORS - comma-separated origins or "*" for development only
    cors_origins: str = "http://localhost:3000,http://localhost:8000"

    # Server
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # API
    api_v1_prefix: str = "/api/v1"

    # Rate limiting
    rate_limit_enabled: bool = True

    # ==========================================================================
    # Cache layers (seconds). Volatile data expires fastest.
    # ==========================================================================
    cache_ttl_products_seconds: float = 30 * 60
    cache_ttl_recipe_ingredients_seconds: float = 15 * 60
    cache_ttl_inventory_seconds: float = 5 * 60
    cache_ttl_cart_validation_seconds: float = 2 * 60
    cache_ttl_batched_data_seconds: float = 10 * 60
    cache_max_entries: int = 10000

    # Request deduplication window
    dedupe_window_ms: int = 500

    # ==========================================================================
    # Availability
    # ==========================================================================
    low_stock_threshold: int = 5
    direct_sale_quantity: int = 999  # sentinel for products without a recipe

    # ==========================================================================
    # Deduction engine
    # ==========================================================================
    fuzzy_match_threshold: float = 0.5
    deduction_chunk_size: int = 50
    deduction_timeout_seconds: float = 30.0
    deduction_write_retries: int = 3

    # Progressive loading / change notifications
    progress_chunk_size: int = 10
    invalidation_debounce_ms: int = 500

    @field_validator(
        "cache_ttl_products_seconds",
        "cache_ttl_recipe_ingredients_seconds",
        "cache_ttl_inventory_seconds",
        "cache_ttl_cart_validation_seconds",
        "cache_ttl_batched_data_seconds",
        "deduction_timeout_seconds",
    )
    @classmethod
    def validate_positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("deduction_chunk_size", "progress_chunk_size", "cache_max_entries")
    @classmethod
    def validate_positive_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("fuzzy_match_threshold")
    @classmethod
    def validate_fuzzy_threshold(cls, v: float) -> float:
        if not 0 < v < 1:
            raise ValueError("fuzzy_match_threshold must be between 0 and 1")
        return v

    @model_validator(mode="after")
    def validate_layer_ordering(self) -> "Settings":
        """Warn when inventory data would outlive the catalog data built on it."""
        import warnings

        if self.cache_ttl_inventory_seconds > self.cache_ttl_batched_data_seconds:
            warnings.warn(
                "CACHE_TTL_INVENTORY_SECONDS exceeds CACHE_TTL_BATCHED_DATA_SECONDS; "
                "snapshots will be rebuilt from stale inventory rows.",
                UserWarning,
                stacklevel=2,
            )
        return self

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def dedupe_window_seconds(self) -> float:
        return self.dedupe_window_ms / 1000

    @property
    def invalidation_debounce_seconds(self) -> float:
        return self.invalidation_debounce_ms / 1000


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()

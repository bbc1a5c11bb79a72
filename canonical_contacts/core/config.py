"""
Configuration module with strict validation.

Key principles:
- Every setting has a safe default so the library imports without a .env
- Match confidence bands are configuration, not constants
- The review floor must sit strictly below the auto-link threshold
"""
from typing import Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with validation.

    Loads from environment variables and .env file.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./canonical_contacts.db",
        description="SQLAlchemy connection URL (PostgreSQL in production)"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    # Match engine confidence bands
    match_link_threshold: float = Field(
        default=0.95,
        gt=0.0,
        le=1.0,
        description="Top score at or above this links to the existing record"
    )

    match_review_floor: float = Field(
        default=0.50,
        ge=0.0,
        lt=1.0,
        description="Top score at or above this (and below the link threshold) needs review"
    )

    fuzzy_name_threshold: float = Field(
        default=0.90,
        ge=0.5,
        le=1.0,
        description="Minimum Levenshtein ratio for a near-exact name match"
    )

    match_candidate_limit: int = Field(
        default=100,
        ge=1,
        le=5000,
        description="Maximum stored records scanned per fuzzy name lookup"
    )

    # Duplicate queue batch jobs
    duplicate_detection_min_confidence: float = Field(
        default=0.70,
        ge=0.0,
        le=1.0,
        description="Minimum pair confidence saved by batch duplicate detection"
    )

    auto_merge_min_confidence: float = Field(
        default=0.98,
        ge=0.0,
        le=1.0,
        description="Only pending candidates at or above this are auto-merged"
    )

    auto_merge_max_per_run: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Safety limit on merges per auto-merge run"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v_upper

    @model_validator(mode="after")
    def validate_match_bands(self) -> "Settings":
        """The review band must be non-empty."""
        if self.match_review_floor >= self.match_link_threshold:
            raise ValueError(
                "match_review_floor must be lower than match_link_threshold "
                f"(got {self.match_review_floor} >= {self.match_link_threshold})"
            )
        return self


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get or create the global settings instance.

    This pattern allows:
    - Easy testing (can reset settings between tests)
    - Lazy loading (only loads when first accessed)
    - Singleton pattern (same instance used everywhere)
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """
    Reset the global settings instance.

    Useful for testing to ensure clean state between tests.
    """
    global _settings
    _settings = None

"""Configuration models for validation using Pydantic."""

from typing import Optional
from pydantic import BaseModel, Field, field_validator, model_validator


class CredentialsConfig(BaseModel):
    """API credentials loaded from environment variables."""

    # GitHub (required)
    github_token: str = Field(..., min_length=1, description="GitHub personal access token")

    # Supabase (required)
    supabase_url: str = Field(..., min_length=1, description="Supabase project URL")
    supabase_key: str = Field(..., min_length=1, description="Supabase API key")
    database_url: Optional[str] = Field(None, description="PostgreSQL database URL (optional, for schema setup)")

    @field_validator("github_token")
    @classmethod
    def validate_github_token(cls, v: str) -> str:
        """Reject the placeholder token shipped in .env.example."""
        if not v or v == "ghp_your_token_here":
            raise ValueError("GitHub token must be set in .env file")
        return v

    @field_validator("supabase_url")
    @classmethod
    def validate_supabase_url(cls, v: str) -> str:
        """Validate Supabase URL format."""
        if not v or v == "https://your-project.supabase.co":
            raise ValueError("Supabase URL must be set in .env file")
        if not v.startswith("https://"):
            raise ValueError("Supabase URL must start with https://")
        return v

    @field_validator("supabase_key")
    @classmethod
    def validate_supabase_key(cls, v: str) -> str:
        """Validate Supabase key is set."""
        if not v or v == "your_supabase_anon_key_here":
            raise ValueError("Supabase key must be set in .env file")
        return v


class EnrichmentSettings(BaseModel):
    """Tuning knobs for the API client and the batch enrichment loop."""

    # Batch selection
    batch_size: int = Field(default=10, ge=1, description="Rows fetched per enrichment batch")
    max_attempts: int = Field(default=3, ge=1, description="Attempts before a row is given up on")
    abort_on_error: bool = Field(default=False, description="Abort a batch on unexpected row errors")
    workers: int = Field(default=1, ge=1, le=16, description="Rows processed concurrently within a batch")

    # Rate limiting
    safety_margin: int = Field(default=20, ge=0, description="Requests kept in reserve before waiting for reset")
    rate_limit_retries: int = Field(default=1, ge=0, description="403 rate-limit responses absorbed by waiting inline")
    default_rate_limit_wait_sec: int = Field(default=3600, ge=1, description="Wait used when reset time is unknown")

    # Retry / backoff
    max_retries: int = Field(default=3, ge=0, description="Retries for transient failures")
    backoff_base_sec: float = Field(default=1.0, ge=0, description="Base delay for exponential backoff")
    backoff_cap_sec: float = Field(default=60.0, ge=0, description="Upper bound for a single backoff delay")
    jitter_ratio: float = Field(default=0.3, ge=0, le=1, description="+/- jitter applied to backoff delays")
    request_timeout_sec: int = Field(default=30, ge=1, description="HTTP timeout per request")

    # Circuit breaker
    failure_threshold: int = Field(default=5, ge=1, description="Consecutive failures before opening the circuit")
    reset_timeout_sec: float = Field(default=60.0, gt=0, description="Time spent OPEN before probing")
    monitor_interval_sec: float = Field(default=5.0, gt=0, description="How often the breaker checks for recovery")

    # Contributor enrichment
    fetch_contributor_languages: bool = Field(
        default=True,
        description="Derive top languages from the contributor's public repositories",
    )

    @model_validator(mode="after")
    def validate_backoff_bounds(self):
        """Ensure the cap is never below the base delay."""
        if self.backoff_cap_sec < self.backoff_base_sec:
            raise ValueError("backoff_cap_sec must be greater than or equal to backoff_base_sec")
        return self


class Config(BaseModel):
    """Application configuration."""

    credentials: CredentialsConfig
    settings: EnrichmentSettings = Field(default_factory=EnrichmentSettings)
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard levels."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v_upper

"""Configuration loader that reads from .env and validates with Pydantic."""

import os
import sys
from pathlib import Path
from dotenv import load_dotenv
from pydantic import ValidationError

from models.config_models import Config, CredentialsConfig, EnrichmentSettings

# Environment variable -> EnrichmentSettings field
SETTINGS_ENV_VARS = {
    "ENRICH_BATCH_SIZE": "batch_size",
    "ENRICH_MAX_ATTEMPTS": "max_attempts",
    "ENRICH_ABORT_ON_ERROR": "abort_on_error",
    "ENRICH_WORKERS": "workers",
    "ENRICH_SAFETY_MARGIN": "safety_margin",
    "ENRICH_RATE_LIMIT_RETRIES": "rate_limit_retries",
    "ENRICH_DEFAULT_RATE_LIMIT_WAIT_SEC": "default_rate_limit_wait_sec",
    "ENRICH_MAX_RETRIES": "max_retries",
    "ENRICH_BACKOFF_BASE_SEC": "backoff_base_sec",
    "ENRICH_BACKOFF_CAP_SEC": "backoff_cap_sec",
    "ENRICH_REQUEST_TIMEOUT_SEC": "request_timeout_sec",
    "ENRICH_FAILURE_THRESHOLD": "failure_threshold",
    "ENRICH_RESET_TIMEOUT_SEC": "reset_timeout_sec",
    "ENRICH_MONITOR_INTERVAL_SEC": "monitor_interval_sec",
    "ENRICH_FETCH_CONTRIBUTOR_LANGUAGES": "fetch_contributor_languages",
}


def load_settings_from_env() -> EnrichmentSettings:
    """Build EnrichmentSettings from ENRICH_* environment variables.

    Unset variables fall back to model defaults; Pydantic coerces the
    string values ("25", "true", "1.5") into the declared field types.
    """
    overrides = {
        field: os.environ[env_var]
        for env_var, field in SETTINGS_ENV_VARS.items()
        if os.environ.get(env_var, "") != ""
    }
    return EnrichmentSettings(**overrides)


def load_config() -> Config:
    """
    Load and validate configuration from environment variables.

    Reads from .env file in the project root and validates all required
    credentials and settings using Pydantic models.

    Returns:
        Config: Validated configuration object

    Raises:
        SystemExit: If configuration is invalid or missing required fields
    """
    # Load .env file from project root
    env_path = Path(__file__).parent.parent / ".env"
    load_dotenv(dotenv_path=env_path)

    try:
        config = Config(
            credentials=CredentialsConfig(
                github_token=os.getenv("GITHUB_TOKEN", ""),
                supabase_url=os.getenv("SUPABASE_URL", ""),
                supabase_key=os.getenv("SUPABASE_KEY", ""),
                database_url=os.getenv("DATABASE_URL"),
            ),
            settings=load_settings_from_env(),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

        return config

    except ValidationError as e:
        print("❌ Configuration validation failed:", file=sys.stderr)
        print("\nPlease check your .env file. Missing or invalid fields:", file=sys.stderr)

        for error in e.errors():
            field_path = " → ".join(str(x) for x in error["loc"])
            message = error["msg"]
            print(f"  • {field_path}: {message}", file=sys.stderr)

        print("\nHint: Copy .env.example to .env and fill in your credentials.", file=sys.stderr)
        sys.exit(1)

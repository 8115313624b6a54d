"""Centralised configuration loaded from environment variables / .env file."""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

_DATA_DIR = Path(__file__).resolve().parent / "data"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = "dev"

    # OpenAI (summary generator)
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = ""
    openai_temperature: float = 0.2
    openai_max_tokens: int = 1400
    openai_reasoning_effort: str = ""
    # Must stay well under the caller's request budget so the fallback can run.
    generator_timeout_seconds: float = 22.0

    # Marketing platform (contact property snapshot)
    hubspot_token: str = ""
    hubspot_base_url: str = "https://api.hubapi.com"
    hubspot_timeout_seconds: float = 2.5

    # Source fetches
    source_timeout_seconds: float = 8.0
    since_days: int = 90

    # Record links appended to the summary
    record_base_url: str = ""

    # Output
    summary_max_chars: int = 32000

    # Policy documents
    rules_path: Path = _DATA_DIR / "product_interest_rules_v1.json"
    timeline_policy_path: Path = _DATA_DIR / "timeline_policy_v1.json"

    # API auth (empty disables auth)
    briefing_api_key: str = ""

    # Logging
    log_level: str = "INFO"

    @property
    def generator_configured(self) -> bool:
        return bool(self.openai_api_key)


settings = Settings()


def validate_config() -> None:
    """Log which optional integrations are configured.

    Nothing here is fatal: a missing generator key simply means every
    summary takes the deterministic path.
    """
    if not settings.openai_api_key:
        logger.info("OPENAI_API_KEY not set: summaries will use the deterministic renderer")
    if not settings.hubspot_token:
        logger.info("HUBSPOT_TOKEN not set: marketing property evidence disabled")
    if settings.record_base_url and not settings.record_base_url.startswith("https://"):
        logger.warning("RECORD_BASE_URL is not https://: record links will be omitted")
    for label, path in (
        ("rules", settings.rules_path),
        ("timeline policy", settings.timeline_policy_path),
    ):
        if not Path(path).exists():
            logger.warning("Configured %s document not found at %s", label, path)

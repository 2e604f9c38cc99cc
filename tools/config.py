import os
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from tools.errors import InvalidConfigError

DEFAULT_WEBHOOK_URL = "http://localhost:5678/webhook/prospect-research"

ENV_KEYS = {
    "webhook_url": "RESEARCH_WEBHOOK_URL",
    "webhook_timeout_seconds": "WEBHOOK_TIMEOUT_SECONDS",
    "max_retries": "MAX_RETRIES",
    "retry_delay_seconds": "RETRY_DELAY_SECONDS",
    "batch_size": "BATCH_SIZE",
    "inter_batch_delay_seconds": "INTER_BATCH_DELAY_SECONDS",
    "stale_processing_seconds": "STALE_PROCESSING_SECONDS",
    "callback_dedupe_ttl_seconds": "CALLBACK_DEDUPE_TTL_SECONDS",
}


class ResearchSettings(BaseModel):
    """Immutable dispatch settings handed to the pipeline at construction."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    webhook_url: str = DEFAULT_WEBHOOK_URL
    webhook_timeout_seconds: int = Field(1800, ge=30, le=1800)
    max_retries: int = Field(1, ge=0, le=10)
    retry_delay_seconds: int = Field(30, ge=1, le=60)
    batch_size: int = Field(10, ge=1, le=100)
    inter_batch_delay_seconds: float = Field(2.0, ge=0)
    stale_processing_seconds: Optional[int] = Field(None, gt=0)
    callback_dedupe_ttl_seconds: int = Field(3600, gt=0)

    @field_validator("webhook_url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        parts = urlsplit(value)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError("webhook_url must be an absolute http(s) URL")
        return value

    def with_overrides(self, **overrides: Any) -> "ResearchSettings":
        """Return a validated copy with the given fields replaced."""
        return build_settings({**self.model_dump(), **overrides})


def build_settings(values: Dict[str, Any]) -> ResearchSettings:
    try:
        return ResearchSettings.model_validate(values)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise InvalidConfigError(f"Invalid settings: {problems}") from e


def load_settings() -> ResearchSettings:
    """Read settings from the environment (and a .env file if present)."""
    load_dotenv()

    values: Dict[str, Any] = {}
    for field_name, env_key in ENV_KEYS.items():
        raw = os.getenv(env_key)
        if raw is not None and raw.strip() != "":
            values[field_name] = raw.strip()

    settings = build_settings(values)
    logger.info(
        f"Research settings loaded: url={settings.webhook_url} "
        f"timeout={settings.webhook_timeout_seconds}s retries={settings.max_retries} "
        f"batch_size={settings.batch_size}"
    )
    return settings

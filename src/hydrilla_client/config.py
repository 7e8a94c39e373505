"""Client settings loaded from environment variables (and ``.env``).

All variables use the ``HYDRILLA_`` prefix, e.g. ``HYDRILLA_BACKEND_URL``.
"""

import logging

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.hydrilla.co"
# Local-dev bookkeeping backend used when HYDRILLA_BACKEND_URL is not set
DEFAULT_BACKEND_URL = "http://localhost:4000"

BACKEND_URL_ENV = "HYDRILLA_BACKEND_URL"


class Settings(BaseSettings):
    """Client settings loaded from environment variables."""

    # Generation API (text/image to 3D, status, cancel)
    api_url: str = DEFAULT_API_URL

    # Bookkeeping backend (history, register-job, user sync, payments)
    backend_url: str | None = None

    # Poller
    poll_interval_seconds: float = 5.0
    failure_threshold: int = 3

    # Timeouts
    request_timeout_seconds: float = 30.0
    history_timeout_seconds: float = 30.0
    notify_timeout_seconds: float = 5.0
    queue_info_timeout_seconds: float = 2.0

    log_level: str = "INFO"

    # Static bearer token for CLI use; UIs pass a token provider instead
    auth_token: str | None = None

    model_config = SettingsConfigDict(
        env_prefix="HYDRILLA_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("api_url")
    @classmethod
    def _strip_api_slash(cls, value: str) -> str:
        return value.rstrip("/") or DEFAULT_API_URL

    @field_validator("backend_url")
    @classmethod
    def _normalise_backend_url(cls, value: str | None) -> str | None:
        # Deploy templates sometimes leave the variable name in as the value
        if not value or not value.strip() or BACKEND_URL_ENV in value:
            return None
        return value.strip().rstrip("/")

    @property
    def backend_configured(self) -> bool:
        return self.backend_url is not None

    def resolved_backend_url(self) -> str:
        """Return the backend base URL, falling back to the local default."""
        if self.backend_url:
            return self.backend_url
        logger.warning(
            "%s is not set; using local fallback %s. Set %s to your backend URL.",
            BACKEND_URL_ENV,
            DEFAULT_BACKEND_URL,
            BACKEND_URL_ENV,
        )
        return DEFAULT_BACKEND_URL


settings = Settings()

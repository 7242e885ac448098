"""Runtime configuration loaded from environment variables."""

from __future__ import annotations

import os

from pydantic import BaseModel, ConfigDict, Field

from src.webhook.status_machine import DEFAULT_MAX_RETRIES

_TRUTHY = {"1", "true", "yes", "on"}


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    webhook_db_path: str = "data/webhooks.db"
    retry_queue_db_path: str = "data/retry-queue.db"
    retry_queue_url: str | None = None
    retry_queue_token: str | None = None
    retry_max_receive_count: int = Field(default=2, ge=1)
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=1)
    signing_secret: str = ""
    signature_validation: bool = False
    audit_log_path: str | None = None
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    poll_batch_size: int = Field(default=10, ge=1, le=1000)

    @classmethod
    def from_env(cls) -> Settings:
        """Read settings from the environment, falling back to defaults."""
        env = os.environ
        defaults = cls()
        return cls(
            webhook_db_path=env.get("WEBHOOK_DB_PATH", defaults.webhook_db_path),
            retry_queue_db_path=env.get("RETRY_QUEUE_DB_PATH", defaults.retry_queue_db_path),
            retry_queue_url=env.get("RETRY_QUEUE_URL") or None,
            retry_queue_token=env.get("RETRY_QUEUE_TOKEN") or None,
            retry_max_receive_count=int(
                env.get("RETRY_QUEUE_MAX_RECEIVE_COUNT", str(defaults.retry_max_receive_count))
            ),
            max_retries=int(env.get("MAX_RETRIES", str(defaults.max_retries))),
            signing_secret=env.get("WEBHOOK_SIGNING_SECRET", ""),
            signature_validation=(
                env.get("ENABLE_WEBHOOK_SIGNATURE_VALIDATION", "").lower() in _TRUTHY
            ),
            audit_log_path=env.get("AUDIT_LOG_PATH") or None,
            poll_interval_seconds=float(
                env.get("POLL_INTERVAL_SECONDS", str(defaults.poll_interval_seconds))
            ),
            poll_batch_size=int(env.get("POLL_BATCH_SIZE", str(defaults.poll_batch_size))),
        )

"""Shared configuration settings across services."""

from typing import Any, Literal

from pydantic import BaseModel, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

QueueOptionName = Literal["batch_size", "max_concurrent_batches", "delay"]

BUILTIN_PROVIDER = "postgres"


def normalize_sqlalchemy_postgres_url(url: str) -> str:
    """Normalize psycopg DSN for SQLAlchemy usage."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


class QueueOptions(BaseModel):
    """Scheduling overrides for one provider or one named queue."""

    batch_size: int | None = None
    max_concurrent_batches: int | None = None
    delay: int | None = None


class SharedSettings(BaseSettings):
    """Base settings shared by the queue library and its services."""

    runtime_env: str = "local"
    log_level: str = "INFO"

    redis_url: str = "redis://redis:6379/0"  # Docker Compose default; set REDIS_URL when running outside Compose.
    redis_socket_connect_timeout: float | None = 5.0
    redis_socket_timeout: float | None = 5.0
    postgres_url: str = "postgresql://postgres@postgres:5432/jobdrain"

    queue_default: str | None = None
    queue_batch_size: int = 100
    queue_max_concurrent_batches: int = 1
    queue_delay: int = 0
    queue_lease_seconds: int = 600
    queue_providers: dict[str, QueueOptions] = {}
    queue_queues: dict[str, QueueOptions] = {}

    trigger_key: str = "jobdrain:triggers"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @model_validator(mode="after")
    def validate_required_secrets(self) -> "SharedSettings":
        """Require a database URL in non-local runtime environments."""
        env = self.runtime_env.strip().lower()
        if env in {"local", "dev", "development", "test"}:
            return self

        if not self.postgres_url.strip():
            raise ValueError("POSTGRES_URL must be set when RUNTIME_ENV is non-local.")
        return self

    @property
    def default_provider_name(self) -> str:
        """Configured default driver, falling back to the built-in one."""
        name = (self.queue_default or "").strip()
        return name or BUILTIN_PROVIDER

    def queue_option(
        self,
        key: QueueOptionName,
        queue: str | None = None,
        provider: str | None = None,
    ) -> Any:
        """Resolve a scheduling option: per-queue, then per-provider, then global."""
        if queue and queue in self.queue_queues:
            value = getattr(self.queue_queues[queue], key)
            if value is not None:
                return value

        if provider and provider in self.queue_providers:
            value = getattr(self.queue_providers[provider], key)
            if value is not None:
                return value

        return getattr(self, f"queue_{key}")

"""Configuration for queue worker and operator API services."""

from pydantic import model_validator

from jobdrain.queue import parse_queue_names
from jobdrain.settings import SharedSettings


class WorkerSettings(SharedSettings):
    """Service settings layered on top of shared queue settings."""

    worker_name: str = "jobdrain-worker"
    worker_queue_names: str = "default"
    dramatiq_queue_name: str = "jobdrain.drain"
    dramatiq_stop_timeout_seconds: int = 600

    trigger_poll_interval_seconds: float = 1.0
    trigger_claim_limit: int = 100
    reconcile_interval_seconds: int = 60

    api_host: str = "0.0.0.0"
    api_port: int = 8090
    api_shared_secret: str | None = None

    @model_validator(mode="after")
    def validate_intervals(self) -> "WorkerSettings":
        """Reject polling intervals that would spin or never fire."""
        if self.trigger_poll_interval_seconds <= 0:
            raise ValueError("TRIGGER_POLL_INTERVAL_SECONDS must be positive")
        if self.reconcile_interval_seconds < 1:
            raise ValueError("RECONCILE_INTERVAL_SECONDS must be at least 1")
        return self

    @property
    def queue_names(self) -> list[str]:
        """Queues this deployment drains and reconciles."""
        return parse_queue_names(self.worker_queue_names) or ["default"]


settings = WorkerSettings()

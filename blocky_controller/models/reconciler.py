"""Controller settings and the per-reconcile result."""

from enum import Enum
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from blocky_controller.models.meta import ObjectKey


class ControllerSettings(BaseSettings):
    """
    Configuration for the Blocky controller, read from ``BLOCKY_*``
    environment variables at the process edge and passed in explicitly.
    """

    model_config = SettingsConfigDict(env_prefix="BLOCKY_")

    image: str = "docker.io/unstoppablemango/blocky:latest"
    store_backend: Literal["memory", "kubernetes"] = "memory"
    reconcile_timeout_seconds: float = Field(default=10.0, gt=0)
    creation_requeue_seconds: float = Field(default=1.0, ge=0)
    backoff_base_seconds: float = Field(default=0.5, gt=0)
    backoff_max_seconds: float = Field(default=300.0, gt=0)
    status_retry_attempts: int = Field(default=3, ge=1)
    resync_period_seconds: float = Field(default=300.0, gt=0)
    workers: int = Field(default=2, ge=1)
    log_level: str = "INFO"

    def backoff_for(self, attempt: int) -> float:
        """Exponential backoff for the n-th consecutive failure (0-based)."""
        delay = self.backoff_base_seconds * (2 ** max(attempt, 0))
        return min(delay, self.backoff_max_seconds)


class ReconcileAction(str, Enum):
    NONE = "none"               # Deleted, or already converged
    CREATED = "created"
    UPDATED = "updated"
    INVALID = "invalid"         # Spec outside the accepted domain
    FAILED = "failed"


class ReconcileResult:
    """Outcome of one reconcile pass. The dispatcher schedules any requeue."""

    def __init__(
        self,
        key: ObjectKey,
        action: ReconcileAction = ReconcileAction.NONE,
        requeue_after: Optional[float] = None,
        error: Optional[Exception] = None,
    ):
        self.key = key
        self.action = action
        self.requeue_after = requeue_after
        self.error = error

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {
            "key": str(self.key),
            "action": self.action.value,
            "requeue_after": self.requeue_after,
            "error": str(self.error) if self.error else None,
            "error_type": type(self.error).__name__ if self.error else None,
        }

    def __repr__(self) -> str:
        return (
            f"ReconcileResult(key={self.key}, action={self.action.value}, "
            f"requeue_after={self.requeue_after}, error={self.error!r})"
        )

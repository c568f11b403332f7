"""Single-flight ingestion job runner.

Every scheduled job moves through

    IDLE -> FETCHING -> NORMALIZING -> UPSERTING -> IDLE
    IDLE -> FETCHING -> ... -> FAILED -> IDLE

A tick that arrives while the previous one is still running is skipped,
never queued. Transitions are recorded so the API and tests can observe
them.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


logger = logging.getLogger(__name__)


class JobState(str, Enum):
    """Ingestion cycle phase."""

    IDLE = "idle"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    UPSERTING = "upserting"
    FAILED = "failed"


class PartialBatchError(Exception):
    """Raised when some rows of a batch could not be written."""

    def __init__(self, job_name: str, failed_keys: list):
        self.job_name = job_name
        self.failed_keys = failed_keys
        super().__init__(
            f"{job_name}: {len(failed_keys)} rows failed, first={failed_keys[:5]}"
        )


@dataclass
class JobStatus:
    """Observable state of one job."""

    name: str
    state: JobState = JobState.IDLE
    run_count: int = 0
    skipped_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_result: Optional[Any] = None
    transitions: list[tuple[JobState, JobState]] = field(default_factory=list)

    def to_dict(self) -> dict:
        result = self.last_result
        if hasattr(result, "to_dict"):
            result = result.to_dict()
        return {
            "name": self.name,
            "state": self.state.value,
            "run_count": self.run_count,
            "skipped_count": self.skipped_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "last_started_at": (
                self.last_started_at.isoformat() if self.last_started_at else None
            ),
            "last_finished_at": (
                self.last_finished_at.isoformat() if self.last_finished_at else None
            ),
            "last_result": result,
        }


class IngestionJob:
    """Base class for scheduled jobs; subclasses implement run()."""

    name = "job"

    MAX_TRANSITIONS = 100

    def __init__(self) -> None:
        self.status = JobStatus(name=self.name)

    @property
    def state(self) -> JobState:
        return self.status.state

    @property
    def is_running(self) -> bool:
        return self.status.state is not JobState.IDLE

    def transition(self, new_state: JobState) -> None:
        old_state = self.status.state
        if old_state is new_state:
            return
        self.status.state = new_state
        self.status.transitions.append((old_state, new_state))
        del self.status.transitions[: -self.MAX_TRANSITIONS]
        logger.debug("Job %s: %s -> %s", self.name, old_state.value, new_state.value)

    async def tick(self, **kwargs: Any) -> Optional[Any]:
        """Run once unless a previous tick is still in flight.

        Returns:
            The run() result, or None if skipped or failed
        """
        if self.is_running:
            self.status.skipped_count += 1
            logger.warning(
                "Job %s still %s, skipping tick", self.name, self.status.state.value
            )
            return None

        self.status.run_count += 1
        self.status.last_started_at = datetime.now(timezone.utc)
        self.transition(JobState.FETCHING)

        result = None
        try:
            result = await self.run(**kwargs)
        except Exception as exc:
            self.status.error_count += 1
            self.status.last_error = str(exc)
            self.transition(JobState.FAILED)
            logger.error("Job %s failed: %s", self.name, exc, exc_info=True)
        else:
            self.status.last_error = None
            self.status.last_result = result
        finally:
            self.status.last_finished_at = datetime.now(timezone.utc)
            self.transition(JobState.IDLE)

        return result

    async def run(self, **kwargs: Any) -> Any:
        raise NotImplementedError

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from repo_combiner.config import RunStats
from repo_combiner.logging import logger

if TYPE_CHECKING:
    from collections.abc import Callable


class ProgressPhase(StrEnum):
    """Phases reported to progress observers."""

    INITIALIZING = "initializing"
    FETCHING = "fetching"
    PROCESSING = "processing"
    GENERATING = "generating"
    COMPLETE = "complete"
    ERROR = "error"
    WARNING = "warning"
    WAITING = "waiting"
    RETRYING = "retrying"
    ABORTED = "aborted"


class ProgressEvent(BaseModel):
    """One progress notification.

    Attributes:
        phase: Current phase of the run.
        message: Human readable description.
        progress: Fraction in [0, 1] when a denominator is known, otherwise None.
        stats: Snapshot of the run statistics when the event was emitted.
        timestamp: Emission time (UTC).
    """

    model_config = ConfigDict(frozen=True)

    phase: ProgressPhase
    message: str
    progress: float | None = Field(default=None, ge=0.0, le=1.0)
    stats: RunStats = Field(default_factory=RunStats)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


_LOUD_PHASES = {ProgressPhase.WARNING, ProgressPhase.WAITING, ProgressPhase.RETRYING}
_MILESTONE_PHASES = {
    ProgressPhase.INITIALIZING,
    ProgressPhase.GENERATING,
    ProgressPhase.COMPLETE,
    ProgressPhase.ABORTED,
}


class ProgressReporter:
    """Fan progress events out to the structured log and to an optional observer."""

    def __init__(
        self,
        sink: Callable[[ProgressEvent], Any] | None = None,
        stats: Callable[[], RunStats] | None = None,
    ) -> None:
        self._sink = sink
        self._stats = stats or RunStats
        self.events_emitted = 0

    def emit(
        self,
        phase: ProgressPhase,
        message: str,
        progress: float | None = None,
    ) -> ProgressEvent:
        """Build an event, log it and hand it to the observer."""
        if progress is not None:
            progress = min(1.0, max(0.0, progress))
        event = ProgressEvent(phase=phase, message=message, progress=progress, stats=self._stats())
        if phase == ProgressPhase.ERROR:
            logger.error("progress", phase=str(phase), message=message)
        elif phase in _LOUD_PHASES:
            logger.warning("progress", phase=str(phase), message=message)
        elif phase in _MILESTONE_PHASES:
            logger.info("progress", phase=str(phase), message=message, progress=progress)
        else:
            logger.debug("progress", phase=str(phase), message=message, progress=progress)
        self.events_emitted += 1
        if self._sink is not None:
            self._sink(event)
        return event

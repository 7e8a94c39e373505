"""Progress estimation for in-flight generation jobs.

The backend reports a queue position and duration estimates, not a percentage.
The estimator turns those into a smooth, bounded bar:

    waiting phase     (queue position > 0):  0 → waiting ceiling
    processing phase  (position 0 / absent): waiting ceiling → processing ceiling

The gap between the processing ceiling and 100 is never closed by estimation.
Only an authoritative ``completed`` status sets 100.
"""

import math
import time
from dataclasses import dataclass, field
from typing import Callable

from hydrilla_client.models import DisplayProgress, GenerationMode, Job, JobStatus

# Step messages shown under the bar, keyed by the percent at which they start
STEP_MESSAGES: dict[str, list[tuple[float, str]]] = {
    "text-to-3d": [
        (0, "Initializing job..."),
        (10, "Generating image from text prompt..."),
        (30, "Optimizing generated image..."),
        (40, "Removing background..."),
        (50, "Generating 3D mesh..."),
        (90, "Finalizing 3D model..."),
        (95, "Uploading to cloud storage..."),
    ],
    "image-to-3d": [
        (0, "Initializing job..."),
        (10, "Downloading and optimizing image..."),
        (30, "Removing background..."),
        (50, "Generating 3D mesh..."),
        (90, "Finalizing 3D model..."),
        (95, "Uploading to cloud storage..."),
    ],
}

WAITING_MESSAGE = "Waiting in queue..."


@dataclass(frozen=True)
class ProgressConfig:
    """Presentation heuristics for the progress bar. Tune freely."""

    waiting_ceiling: float = 45.0
    processing_ceiling: float = 95.0
    # Highest value a non-terminal job may display
    non_terminal_cap: float = 99.0
    fallback_total_seconds: float = 180.0
    mode_total_seconds: dict[str, float] = field(
        default_factory=lambda: {"text-to-3d": 180.0, "image-to-3d": 150.0}
    )

    def __post_init__(self) -> None:
        if not (
            0.0 <= self.waiting_ceiling <= self.processing_ceiling
            <= self.non_terminal_cap < 100.0
        ):
            raise ValueError(
                "Expected 0 <= waiting_ceiling <= processing_ceiling <= non_terminal_cap < 100"
            )
        if self.fallback_total_seconds <= 0:
            raise ValueError("fallback_total_seconds must be positive")

    def total_for(self, mode: str | None) -> float:
        """Fallback total duration for a generation mode."""
        total = self.mode_total_seconds.get(mode or "", 0.0)
        return total if total > 0 else self.fallback_total_seconds


DEFAULT_CONFIG = ProgressConfig()


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def estimate_percent(
    elapsed_seconds: float,
    queue_position: int | None = None,
    estimated_wait_seconds: float | None = None,
    estimated_total_seconds: float | None = None,
    *,
    previous: float = 0.0,
    config: ProgressConfig = DEFAULT_CONFIG,
) -> float:
    """Estimate display progress for a non-terminal job.

    Args:
        elapsed_seconds: Wall-clock seconds since the job was created.
        queue_position: Jobs ahead of this one; 0 or None means processing.
        estimated_wait_seconds: Backend estimate of time spent queued.
        estimated_total_seconds: Backend estimate of queue + processing time.
            Falls back to ``config.fallback_total_seconds`` when absent.
        previous: The last percent displayed for this job. The result never
            goes below it.
        config: Phase ceilings and fallback durations.

    Returns:
        A percent in ``[0, config.non_terminal_cap]``.
    """
    elapsed = max(0.0, elapsed_seconds)
    total = estimated_total_seconds if estimated_total_seconds and estimated_total_seconds > 0 else config.fallback_total_seconds
    wait = max(0.0, estimated_wait_seconds or 0.0)

    if queue_position is not None and queue_position > 0:
        ratio = elapsed / wait if wait > 0 else elapsed / total
        computed = config.waiting_ceiling * _clamp(ratio, 0.0, 1.0)
    else:
        span = total - wait
        ratio = (elapsed - wait) / span if span > 0 else elapsed / total
        processing_span = config.processing_ceiling - config.waiting_ceiling
        computed = config.waiting_ceiling + processing_span * _clamp(ratio, 0.0, 1.0)

    percent = max(previous, computed)
    return _clamp(percent, 0.0, config.non_terminal_cap)


def step_message(percent: float, mode: str | None) -> str:
    """Return the step description for ``percent`` in the given mode."""
    steps = STEP_MESSAGES.get(mode or "", STEP_MESSAGES["text-to-3d"])
    for threshold, message in reversed(steps):
        if percent >= threshold:
            return message
    return steps[0][1]


def format_duration(seconds: float) -> str:
    """Format seconds as ``"2m 5s"`` or ``"45s"``."""
    total = max(0, int(seconds))
    minutes, secs = divmod(total, 60)
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class ProgressTracker:
    """Session-scoped DisplayProgress for every job seen by the client.

    Keeps the last displayed percent per job so the bar never moves backwards,
    even if the backend revises its estimates downward between polls.
    """

    def __init__(
        self,
        config: ProgressConfig = DEFAULT_CONFIG,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self._clock = clock
        self._progress: dict[str, DisplayProgress] = {}
        self._first_seen: dict[str, float] = {}

    def get(self, job_id: str) -> DisplayProgress | None:
        return self._progress.get(job_id)

    def update(self, job: Job, *, mode: GenerationMode | None = None) -> DisplayProgress:
        """Fold a freshly fetched job status into the job's DisplayProgress."""
        if job.status is JobStatus.COMPLETED:
            return self.complete(job.id)
        if job.status in (JobStatus.FAILED, JobStatus.CANCELLED):
            return self.finish(job)

        previous = self._progress.get(job.id)
        if previous is not None and previous.phase in ("completed", "failed", "cancelled"):
            return previous

        now = self._clock()
        started = job.created_at or self._first_seen.setdefault(job.id, now)
        elapsed = max(0.0, now - started)
        mode = mode or job.mode
        total = job.estimated_total_seconds or self.config.total_for(mode)

        percent = estimate_percent(
            elapsed,
            job.queue_position,
            job.estimated_wait_seconds,
            total,
            previous=previous.percent if previous else 0.0,
            config=self.config,
        )
        waiting = bool(job.queue_position)
        progress = DisplayProgress(
            job_id=job.id,
            percent=percent,
            phase="waiting in queue" if waiting else "processing",
            step_message=WAITING_MESSAGE if waiting else step_message(percent, mode),
            elapsed_seconds=elapsed,
            remaining_seconds=float(math.ceil(max(0.0, total - elapsed))),
        )
        self._progress[job.id] = progress
        return progress

    def complete(self, job_id: str) -> DisplayProgress:
        """Mark a job as confirmed complete: exactly 100%."""
        previous = self._progress.get(job_id)
        progress = DisplayProgress(
            job_id=job_id,
            percent=100.0,
            phase="completed",
            step_message="Completed",
            elapsed_seconds=previous.elapsed_seconds if previous else 0.0,
            remaining_seconds=0.0,
        )
        self._progress[job_id] = progress
        return progress

    def finish(self, job: Job) -> DisplayProgress:
        """Freeze the bar for a failed or cancelled job."""
        previous = self._progress.get(job.id)
        phase = "cancelled" if job.status is JobStatus.CANCELLED else "failed"
        progress = DisplayProgress(
            job_id=job.id,
            percent=previous.percent if previous else 0.0,
            phase=phase,
            step_message=job.error_message or phase.capitalize(),
            elapsed_seconds=previous.elapsed_seconds if previous else 0.0,
            remaining_seconds=None,
        )
        self._progress[job.id] = progress
        return progress

    def forget(self, job_id: str) -> None:
        self._progress.pop(job_id, None)
        self._first_seen.pop(job_id, None)

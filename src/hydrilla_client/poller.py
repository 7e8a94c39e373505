"""Job status poller: tracks the currently generating job to a terminal state.

The poller owns one ``asyncio.Task`` at a time. Each iteration:

    1. awaits ``fetch_status`` (ticks are strictly sequential),
    2. checks that this loop is still the current one,
    3. folds the status into the progress tracker, slot and transcript,
    4. sleeps for the poll interval.

Starting a new job, or starting the same job again, cancels the previous loop
and bumps a generation counter. Every state mutation after an ``await``
compares its generation against the current one first, so a late response
from a superseded or torn-down loop is dropped.
"""

import asyncio
import logging
from typing import Callable

from hydrilla_client.client import HydrillaClient, ImageFile
from hydrilla_client.config import settings
from hydrilla_client.errors import HydrillaError, InvalidInput, NotFound
from hydrilla_client.logging_config import bind_job_id
from hydrilla_client.models import GenerationMode, Job, JobStatus
from hydrilla_client.progress import ProgressTracker
from hydrilla_client.state import ChatTranscript, GeneratingSlot, HistoryStore, reconcile

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[GeneratingSlot], None]


class JobStatusPoller:
    """Keeps a ``GeneratingSlot`` in sync with the backend's view of one job."""

    def __init__(
        self,
        client: HydrillaClient,
        *,
        slot: GeneratingSlot | None = None,
        history: HistoryStore | None = None,
        transcript: ChatTranscript | None = None,
        tracker: ProgressTracker | None = None,
        interval: float | None = None,
        failure_threshold: int | None = None,
        on_update: UpdateCallback | None = None,
    ) -> None:
        self.client = client
        self.slot = slot if slot is not None else GeneratingSlot()
        self.history = history if history is not None else HistoryStore()
        self.transcript = transcript if transcript is not None else ChatTranscript()
        self.tracker = tracker if tracker is not None else ProgressTracker()
        self.interval = settings.poll_interval_seconds if interval is None else interval
        self.failure_threshold = (
            settings.failure_threshold if failure_threshold is None else failure_threshold
        )
        self.on_update = on_update
        self.consecutive_failures = 0

        self._task: asyncio.Task | None = None
        self._generation = 0
        self._active = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_polling(self) -> bool:
        return self._active and self._task is not None and not self._task.done()

    @property
    def job_id(self) -> str | None:
        return self.slot.job_id

    def start(
        self,
        job_id: str,
        *,
        mode: GenerationMode | None = None,
        prompt: str | None = None,
    ) -> None:
        """Begin tracking ``job_id``, replacing whatever loop was running.

        Must be called from a running event loop.
        """
        self._cancel_task()
        self._generation += 1
        generation = self._generation
        self._active = True
        self.consecutive_failures = 0

        if self.slot.job_id != job_id:
            self.slot.assign(job_id, mode=mode, prompt=prompt)
        else:
            self.slot.warning = None
        if self.transcript.message_for(job_id) is None:
            self.transcript.set_status(job_id, "Queued...")

        self._task = asyncio.create_task(self._run(job_id, generation), name=f"poll-{job_id}")

    def stop(self) -> None:
        """Tear down: cancel the loop and ignore any response still in flight."""
        self._active = False
        self._generation += 1
        self._cancel_task()

    def _cancel_task(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    async def wait(self) -> None:
        """Wait until the current loop (and any loop that supersedes it) finishes."""
        while self._task is not None and not self._task.done():
            await asyncio.wait({self._task})
        task = self._task
        if task is not None and not task.cancelled() and task.exception() is not None:
            raise task.exception()

    def _is_current(self, generation: int) -> bool:
        return self._active and generation == self._generation

    def _notify(self) -> None:
        if self.on_update is not None:
            self.on_update(self.slot)

    # ------------------------------------------------------------------
    # Submission and reconciliation
    # ------------------------------------------------------------------

    async def submit(
        self,
        *,
        prompt: str | None = None,
        image_url: str | None = None,
        image_file: ImageFile | None = None,
        chat_id: str | None = None,
    ) -> str:
        """Submit a text or image job and start tracking it.

        Errors from the submission propagate to the caller. If the poller is
        stopped or restarted while the request is in flight, the job id is
        still returned but nothing is tracked.
        """
        if prompt is not None and (image_url or image_file is not None):
            raise InvalidInput("Provide either a prompt or an image, not both")

        generation = self._generation

        mode: GenerationMode
        if prompt is not None:
            mode = "text-to-3d"
            job_id = await self.client.submit_text_to_3d(prompt, chat_id=chat_id)
            label = prompt.strip()
        else:
            mode = "image-to-3d"
            job_id = await self.client.submit_image_to_3d(
                image_url, image_file, chat_id=chat_id
            )
            label = image_url or str(image_file[0] if isinstance(image_file, tuple) else image_file)

        if generation != self._generation:
            logger.info("Poller stopped or restarted during submission of %s; not tracking it", job_id)
            return job_id

        self.transcript.add_prompt(label, job_id=job_id)
        self.start(job_id, mode=mode, prompt=prompt)
        return job_id

    async def resume_from_history(self) -> str | None:
        """On load, resume polling a job that was still in flight last session.

        Refreshes the history store first. Returns the resumed job id, if any.
        """
        generation = self._generation
        try:
            jobs = await self.client.fetch_history()
        except HydrillaError as exc:
            logger.warning("Could not load history to resume in-flight jobs: %s", exc)
            return None
        if generation != self._generation:
            logger.debug("Discarding history loaded for a stopped or restarted poller")
            return None
        self.history.replace(jobs)

        candidate = reconcile(self.slot, self.history)
        if candidate is None:
            return None
        logger.info("Resuming in-flight job %s from history", candidate.id)
        self.start(candidate.id, mode=candidate.mode, prompt=candidate.prompt)
        return candidate.id

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run(self, job_id: str, generation: int) -> None:
        with bind_job_id(job_id):
            logger.info("Polling started", extra={"interval": self.interval})
            while self._is_current(generation):
                finished = await self._tick(job_id, generation)
                if finished or not self._is_current(generation):
                    break
                await asyncio.sleep(self.interval)
            logger.info("Polling stopped")

    async def _tick(self, job_id: str, generation: int) -> bool:
        """Run one poll. Returns True when this loop should end."""
        try:
            job = await self.client.fetch_status(job_id)
        except NotFound as exc:
            if self._is_current(generation):
                self._apply_not_found(job_id, exc)
            return True
        except HydrillaError as exc:
            if not self._is_current(generation):
                return True
            self._record_failure(exc)
            return False

        if not self._is_current(generation):
            logger.debug("Discarding late status for superseded poll")
            return True

        self.consecutive_failures = 0
        self.slot.warning = None
        self.slot.job = job

        if job.status is JobStatus.COMPLETED:
            await self._apply_completed(job, generation)
            return True
        if job.status in (JobStatus.FAILED, JobStatus.CANCELLED):
            self._apply_failed(job)
            return True

        progress = self.tracker.update(job, mode=self.slot.mode)
        self.slot.progress = progress
        self.transcript.set_status(job_id, f"{progress.step_message} ({progress.percent:.0f}%)")
        logger.debug(
            "Job %s: %.1f%%",
            job.status.value,
            progress.percent,
            extra={"queue_position": job.queue_position},
        )
        self._notify()
        return False

    def _record_failure(self, exc: HydrillaError) -> None:
        self.consecutive_failures += 1
        logger.warning(
            "Status fetch failed (%d consecutive): %s", self.consecutive_failures, exc
        )
        if self.consecutive_failures >= self.failure_threshold:
            self.slot.warning = (
                f"Having trouble reaching the server ({exc}). "
                "Your job may still be running; retrying..."
            )
            self._notify()

    async def _apply_completed(self, job: Job, generation: int) -> None:
        self._active = False
        self.slot.progress = self.tracker.complete(job.id)
        self.transcript.resolve_artifact(
            job.id,
            self.client.glb_url(job),
            self.client.preview_image_url(job),
        )
        logger.info("Job completed")
        self._notify()

        # One refresh so the completed job shows up everywhere history is shown
        try:
            jobs = await self.client.fetch_history()
        except HydrillaError as exc:
            logger.warning("History refresh after completion failed: %s", exc)
            return
        if generation != self._generation:
            return
        self.history.replace(jobs)
        self._notify()

    def _apply_failed(self, job: Job) -> None:
        self._active = False
        self.slot.progress = self.tracker.update(job)
        if job.status is JobStatus.CANCELLED:
            reason = job.error_message or "Generation was cancelled"
        else:
            reason = job.error_message or "Generation failed"
        self.slot.error = reason
        self.transcript.resolve_error(job.id, reason)
        logger.info("Job ended with status %s: %s", job.status.value, reason)
        self._notify()

    def _apply_not_found(self, job_id: str, exc: NotFound) -> None:
        self._active = False
        self.tracker.forget(job_id)
        self.slot.progress = None
        self.slot.error = f"Job {job_id} was not found ({exc})"
        self.transcript.resolve_error(job_id, self.slot.error)
        logger.warning("Job not found; polling stopped")
        self._notify()

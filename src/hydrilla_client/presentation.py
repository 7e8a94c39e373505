"""Plain-text rendering of jobs, progress, the library and the chat transcript."""

from typing import Iterable

from hydrilla_client.client import HydrillaClient
from hydrilla_client.models import BackendJob, DisplayProgress, Job, JobStatus, parse_status
from hydrilla_client.progress import format_duration
from hydrilla_client.state import ChatTranscript, GeneratingSlot

STATUS_LABELS: dict[JobStatus, str] = {
    JobStatus.PENDING: "Pending",
    JobStatus.PROCESSING: "Processing",
    JobStatus.COMPLETED: "Completed",
    JobStatus.FAILED: "Failed",
    JobStatus.CANCELLED: "Cancelled",
}

STATUS_ICONS: dict[JobStatus, str] = {
    JobStatus.PENDING: "⏳",
    JobStatus.PROCESSING: "⚙️",
    JobStatus.COMPLETED: "✅",
    JobStatus.FAILED: "❌",
    JobStatus.CANCELLED: "⛔",
}


def status_label(status: JobStatus | str) -> str:
    return STATUS_LABELS[parse_status(status)]


def render_progress_bar(percent: float, width: int = 30) -> str:
    """``[###########-------------------]  37%``"""
    percent = max(0.0, min(100.0, percent))
    filled = int(round(width * percent / 100.0))
    return f"[{'#' * filled}{'-' * (width - filled)}] {percent:3.0f}%"


def render_progress(progress: DisplayProgress) -> str:
    lines = [
        f"Generating 3D Model ({progress.phase})",
        f"  {progress.step_message}",
        f"  {render_progress_bar(progress.percent)}",
    ]
    timing = f"  Elapsed: {format_duration(progress.elapsed_seconds)}"
    if progress.remaining_seconds is not None and progress.phase in ("waiting in queue", "processing"):
        timing += f" | Estimated remaining: {format_duration(progress.remaining_seconds)}"
    lines.append(timing)
    return "\n".join(lines)


def render_slot(slot: GeneratingSlot) -> str:
    """One update for the generation view."""
    if slot.is_empty:
        return "Nothing is generating."
    lines = [f"Job {slot.job_id}"]
    if slot.progress is not None:
        lines.append(render_progress(slot.progress))
    if slot.warning:
        lines.append(f"⚠️  {slot.warning}")
    if slot.error:
        lines.append(f"❌ {slot.error}")
    return "\n".join(lines)


def render_viewer(job: Job, client: HydrillaClient) -> str:
    """Status card for one job: state, artifact and preview links."""
    icon = STATUS_ICONS[job.status]
    lines = [f"{icon} {job.id}  [{status_label(job.status)}]"]
    if job.prompt:
        lines.append(f"  Prompt: {job.prompt}")
    if job.queue_position:
        lines.append(f"  Queue position: {job.queue_position}")
    glb = client.glb_url(job)
    if glb:
        lines.append(f"  Model (GLB): {glb}")
    if job.status is JobStatus.COMPLETED or job.preview_image_url:
        lines.append(f"  Preview: {client.preview_image_url(job)}")
    if job.error_message:
        lines.append(f"  Error: {job.error_message}")
    return "\n".join(lines)


def _library_row(job: BackendJob, client: HydrillaClient) -> str:
    title = job.name or (job.prompt or "").strip()[:80] or job.id
    created = job.created_at.strftime("%Y-%m-%d %H:%M") if job.created_at else "-"
    row = (
        f"{job.id:<36}  {job.generate_type or job.mode:<12}  "
        f"{status_label(job.status):<10}  {created:<16}  {title}"
    )
    row += f"\n{'':<38}open: hydrilla status {job.id}"
    if job.result_glb_url:
        row += f"\n{'':<38}download: {client.proxy_glb_url(job.id)}"
    return row


def render_library(jobs: Iterable[BackendJob], client: HydrillaClient) -> str:
    jobs = list(jobs)
    if not jobs:
        return "No jobs yet. Submit a generation to see history."
    header = f"{'Job':<36}  {'Type':<12}  {'Status':<10}  {'Created':<16}  Title"
    return "\n".join([header, "-" * len(header)] + [_library_row(job, client) for job in jobs])


def render_transcript(transcript: ChatTranscript) -> str:
    lines: list[str] = []
    for message in transcript.messages:
        if message.kind == "prompt":
            lines.append(f"you> {message.text}")
        elif message.kind == "status":
            lines.append(f"  … {message.text}")
        elif message.kind == "artifact":
            lines.append(f"  ✅ {message.text}: {message.artifact_url}")
            if message.preview_url:
                lines.append(f"     preview: {message.preview_url}")
        else:
            lines.append(f"  ❌ {message.text}")
    return "\n".join(lines)

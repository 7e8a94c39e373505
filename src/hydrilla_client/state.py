"""Client-side application state.

Two stores are kept strictly apart:

* ``HistoryStore``: the server-authoritative job list. It is only ever
  replaced wholesale from a history fetch, never patched per job.
* ``GeneratingSlot``: the optimistic "currently generating" record owned by
  the poller.

``reconcile`` is the single step that looks at both. ``SessionState`` owns
the auth state that the web UI used to keep in ambient globals.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Literal

from hydrilla_client.client import TokenProvider
from hydrilla_client.errors import HydrillaError
from hydrilla_client.models import BackendJob, DisplayProgress, GenerationMode, Job

if TYPE_CHECKING:
    from hydrilla_client.client import HydrillaClient

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Session / auth
# ---------------------------------------------------------------------------


class SessionState:
    """Auth state for one signed-in user.

    Initialised by ``sign_in`` and invalidated by ``sign_out``; nothing here
    survives a sign-out. Pass ``get_token`` to ``HydrillaClient`` as its token
    provider so a sign-out immediately stops authenticated calls.
    """

    def __init__(self) -> None:
        self.user_id: str | None = None
        self._token_provider: TokenProvider | None = None
        self._synced_user_id: str | None = None

    @property
    def signed_in(self) -> bool:
        return self.user_id is not None and self._token_provider is not None

    @property
    def user_synced(self) -> bool:
        return self.signed_in and self._synced_user_id == self.user_id

    def sign_in(self, user_id: str, token_provider: TokenProvider) -> None:
        if user_id != self.user_id:
            self._synced_user_id = None
        self.user_id = user_id
        self._token_provider = token_provider

    def sign_out(self) -> None:
        self.user_id = None
        self._token_provider = None
        self._synced_user_id = None

    async def get_token(self) -> str | None:
        if self._token_provider is None:
            return None
        return await self._token_provider()

    async def ensure_user_synced(self, client: "HydrillaClient") -> bool:
        """Sync the user record with the backend once per user per session."""
        if not self.signed_in:
            return False
        if self.user_synced:
            return True
        user_id = self.user_id
        try:
            user = await client.sync_user()
        except HydrillaError as exc:
            logger.warning("Failed to sync user to database: %s", exc)
            return False
        # Signed out (or switched user) while the request was in flight
        if self.user_id != user_id:
            return False
        self._synced_user_id = user_id
        logger.info("User synced to database", extra={"email": (user or {}).get("email")})
        return True


# ---------------------------------------------------------------------------
# History (server-authoritative)
# ---------------------------------------------------------------------------


class HistoryStore:
    """The user's job history as last returned by the backend."""

    def __init__(self) -> None:
        self._jobs: list[BackendJob] = []
        self.loaded = False

    @property
    def jobs(self) -> list[BackendJob]:
        return list(self._jobs)

    def replace(self, jobs: Iterable[BackendJob]) -> None:
        """Swap in a freshly fetched list. Jobs missing from it disappear."""
        self._jobs = list(jobs)
        self.loaded = True

    def get(self, job_id: str) -> BackendJob | None:
        return next((job for job in self._jobs if job.id == job_id), None)

    def in_flight(self) -> list[BackendJob]:
        return [job for job in self._jobs if not job.is_terminal]

    def __contains__(self, job_id: object) -> bool:
        return any(job.id == job_id for job in self._jobs)

    def __len__(self) -> int:
        return len(self._jobs)


# ---------------------------------------------------------------------------
# Currently generating (optimistic)
# ---------------------------------------------------------------------------


@dataclass
class GeneratingSlot:
    """The job the user is currently waiting on."""

    job_id: str | None = None
    mode: GenerationMode | None = None
    prompt: str | None = None
    job: Job | None = None
    progress: DisplayProgress | None = None
    # Terminal failure / cancellation / not-found reason
    error: str | None = None
    # Transient connectivity problem; polling continues
    warning: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.job_id is None

    @property
    def is_terminal(self) -> bool:
        if self.job is not None and self.job.is_terminal:
            return True
        return self.error is not None

    def assign(
        self,
        job_id: str,
        *,
        mode: GenerationMode | None = None,
        prompt: str | None = None,
    ) -> None:
        self.clear()
        self.job_id = job_id
        self.mode = mode
        self.prompt = prompt

    def clear(self) -> None:
        self.job_id = None
        self.mode = None
        self.prompt = None
        self.job = None
        self.progress = None
        self.error = None
        self.warning = None


# ---------------------------------------------------------------------------
# Chat transcript
# ---------------------------------------------------------------------------

MessageKind = Literal["prompt", "status", "artifact", "error"]


@dataclass
class ChatMessage:
    kind: MessageKind
    text: str
    job_id: str | None = None
    artifact_url: str | None = None
    preview_url: str | None = None


@dataclass
class ChatTranscript:
    """Chat-style log of prompts and per-job status lines.

    Each job has at most one message after its prompt: an in-flight status
    line that is replaced in place by the artifact or the error.
    """

    messages: list[ChatMessage] = field(default_factory=list)

    def add_prompt(self, text: str, job_id: str | None = None) -> None:
        self.messages.append(ChatMessage(kind="prompt", text=text, job_id=job_id))

    def _job_message_index(self, job_id: str) -> int | None:
        for index, message in enumerate(self.messages):
            if message.job_id == job_id and message.kind != "prompt":
                return index
        return None

    def _put(self, message: ChatMessage) -> None:
        index = self._job_message_index(message.job_id or "")
        if index is None:
            self.messages.append(message)
        else:
            self.messages[index] = message

    def message_for(self, job_id: str) -> ChatMessage | None:
        index = self._job_message_index(job_id)
        return None if index is None else self.messages[index]

    def set_status(self, job_id: str, text: str) -> None:
        current = self.message_for(job_id)
        if current is not None and current.kind != "status":
            return  # already resolved
        self._put(ChatMessage(kind="status", text=text, job_id=job_id))

    def resolve_artifact(
        self,
        job_id: str,
        artifact_url: str | None,
        preview_url: str | None = None,
    ) -> None:
        self._put(
            ChatMessage(
                kind="artifact",
                text="Your 3D model is ready",
                job_id=job_id,
                artifact_url=artifact_url,
                preview_url=preview_url,
            )
        )

    def resolve_error(self, job_id: str, text: str) -> None:
        self._put(ChatMessage(kind="error", text=text, job_id=job_id))


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def reconcile(slot: GeneratingSlot, history: HistoryStore) -> BackendJob | None:
    """Decide whether an interrupted job from history should be resumed.

    Returns the newest non-terminal history job when the slot is free (empty,
    or holding a job that already reached a terminal state). Returns None
    when the slot is busy tracking a live job or nothing is in flight.
    """
    if not slot.is_empty and not slot.is_terminal:
        return None

    candidates = [job for job in history.in_flight() if job.id != slot.job_id]
    if not candidates:
        return None
    # History is newest-first, but don't rely on it when timestamps exist
    return max(
        candidates,
        key=lambda job: job.created_at.timestamp() if job.created_at else float("-inf"),
    )

# Tests for session, history, generating slot, transcript and reconciliation

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from hydrilla_client.client import static_token_provider
from hydrilla_client.errors import ServerError
from hydrilla_client.models import BackendJob, Job, JobStatus
from hydrilla_client.state import (
    ChatTranscript,
    GeneratingSlot,
    HistoryStore,
    SessionState,
    reconcile,
)


def _record(job_id: str, status: str = "RUN", minute: int = 0, **kw) -> BackendJob:
    created = datetime(2024, 5, 1, 12, minute, tzinfo=timezone.utc)
    return BackendJob(id=job_id, status=status, created_at=created, **kw)


class TestSessionState:
    """Auth state lifecycle"""

    @pytest.mark.asyncio
    async def test_sign_in_and_out(self):
        session = SessionState()
        assert await session.get_token() is None
        session.sign_in("u1", static_token_provider("tok"))
        assert session.signed_in
        assert await session.get_token() == "tok"
        session.sign_out()
        assert not session.signed_in
        assert await session.get_token() is None

    @pytest.mark.asyncio
    async def test_user_synced_once(self):
        session = SessionState()
        session.sign_in("u1", static_token_provider("tok"))
        client = MagicMock()
        client.sync_user = AsyncMock(return_value={"email": "a@b.co"})

        assert await session.ensure_user_synced(client) is True
        assert await session.ensure_user_synced(client) is True
        client.sync_user.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sync_failure_is_not_fatal(self):
        session = SessionState()
        session.sign_in("u1", static_token_provider("tok"))
        client = MagicMock()
        client.sync_user = AsyncMock(side_effect=ServerError("db down", status_code=500))

        assert await session.ensure_user_synced(client) is False
        assert not session.user_synced

    @pytest.mark.asyncio
    async def test_sign_out_mid_sync_discards_result(self):
        session = SessionState()
        session.sign_in("u1", static_token_provider("tok"))

        async def sync_then_sign_out():
            session.sign_out()
            return {"email": "a@b.co"}

        client = MagicMock()
        client.sync_user = AsyncMock(side_effect=sync_then_sign_out)
        assert await session.ensure_user_synced(client) is False
        assert not session.user_synced

    @pytest.mark.asyncio
    async def test_signed_out_skips_sync(self):
        client = MagicMock()
        client.sync_user = AsyncMock()
        assert await SessionState().ensure_user_synced(client) is False
        client.sync_user.assert_not_awaited()


class TestHistoryStore:
    def test_replace_is_wholesale(self):
        """A job absent from the new list disappears, even if it was in progress"""
        store = HistoryStore()
        store.replace([_record("a", "RUN"), _record("b", "DONE")])
        store.replace([_record("b", "DONE")])
        assert "a" not in store
        assert [job.id for job in store.jobs] == ["b"]
        assert store.loaded

    def test_in_flight(self):
        store = HistoryStore()
        store.replace([_record("a", "WAIT"), _record("b", "DONE"), _record("c", "FAIL")])
        assert [job.id for job in store.in_flight()] == ["a"]
        assert len(store) == 3

    def test_jobs_is_a_copy(self):
        store = HistoryStore()
        store.replace([_record("a")])
        store.jobs.clear()
        assert len(store) == 1


class TestGeneratingSlot:
    def test_assign_resets_previous_job(self):
        slot = GeneratingSlot()
        slot.assign("a", mode="text-to-3d", prompt="a sword")
        slot.error = "failed"
        slot.assign("b")
        assert slot.job_id == "b"
        assert slot.error is None
        assert slot.mode is None

    def test_terminal_when_job_terminal_or_errored(self):
        slot = GeneratingSlot()
        slot.assign("a")
        assert not slot.is_terminal
        slot.job = Job.build(id="a", status=JobStatus.CANCELLED)
        assert slot.is_terminal


class TestChatTranscript:
    def test_status_line_replaced_in_place(self):
        transcript = ChatTranscript()
        transcript.add_prompt("a sword", job_id="a")
        transcript.set_status("a", "Queued...")
        transcript.set_status("a", "Generating 3D mesh... (60%)")
        assert len(transcript.messages) == 2
        assert transcript.message_for("a").text == "Generating 3D mesh... (60%)"

    def test_artifact_replaces_status(self):
        transcript = ChatTranscript()
        transcript.add_prompt("a sword", job_id="a")
        transcript.set_status("a", "Queued...")
        transcript.resolve_artifact("a", "https://b/api/3d/glb/a", "https://p.png")
        message = transcript.message_for("a")
        assert message.kind == "artifact"
        assert message.artifact_url == "https://b/api/3d/glb/a"
        assert len(transcript.messages) == 2

    def test_status_after_resolution_is_ignored(self):
        transcript = ChatTranscript()
        transcript.resolve_error("a", "Generation failed")
        transcript.set_status("a", "Processing...")
        assert transcript.message_for("a").kind == "error"


class TestReconcile:
    """Resuming an interrupted job from history"""

    def test_empty_slot_resumes_in_flight_job(self):
        history = HistoryStore()
        history.replace([_record("done", "DONE"), _record("live", "RUN")])
        assert reconcile(GeneratingSlot(), history).id == "live"

    def test_newest_in_flight_wins(self):
        history = HistoryStore()
        history.replace([_record("old", "WAIT", minute=1), _record("new", "RUN", minute=30)])
        assert reconcile(GeneratingSlot(), history).id == "new"

    def test_busy_slot_is_left_alone(self):
        slot = GeneratingSlot()
        slot.assign("current")
        history = HistoryStore()
        history.replace([_record("other", "RUN")])
        assert reconcile(slot, history) is None

    def test_terminal_slot_releases_to_newer_job(self):
        slot = GeneratingSlot()
        slot.assign("finished")
        slot.error = "Generation failed"
        history = HistoryStore()
        history.replace([_record("finished", "RUN"), _record("other", "WAIT")])
        assert reconcile(slot, history).id == "other"

    def test_nothing_in_flight(self):
        history = HistoryStore()
        history.replace([_record("a", "DONE"), _record("b", "FAIL")])
        assert reconcile(GeneratingSlot(), history) is None

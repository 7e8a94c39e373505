# Tests for JobStatusPoller: lifecycle, terminal handling and reconciliation

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from hydrilla_client.client import HydrillaClient
from hydrilla_client.errors import InvalidInput, NetworkError, NotFound
from hydrilla_client.models import BackendJob, Job, JobStatus, QueueInfo
from hydrilla_client.poller import JobStatusPoller


def _pending(job_id: str, position: int = 1) -> Job:
    return Job.build(
        id=job_id,
        status=JobStatus.PENDING if position else JobStatus.PROCESSING,
        queue=QueueInfo(position=position, estimated_wait_seconds=60),
    )


def _completed(job_id: str) -> Job:
    return Job.build(id=job_id, status=JobStatus.COMPLETED, artifact_url=f"https://s3/{job_id}.glb")


def make_client(statuses=None) -> MagicMock:
    client = MagicMock()
    client.fetch_status = AsyncMock(side_effect=statuses)
    client.fetch_history = AsyncMock(return_value=[])
    client.glb_url = MagicMock(side_effect=lambda job: f"https://backend/api/3d/glb/{job.id}")
    client.preview_image_url = MagicMock(return_value="https://preview.png")
    return client


def make_poller(client, **kw) -> JobStatusPoller:
    kw.setdefault("interval", 0)
    kw.setdefault("failure_threshold", 3)
    return JobStatusPoller(client, **kw)


class TestTerminalStates:
    """Polling stops on every terminal outcome"""

    @pytest.mark.asyncio
    async def test_completed_stops_and_shows_100(self):
        """No further fetches after a completed status; percent is exactly 100"""
        client = make_client([_pending("a", 2), _pending("a", 0), _completed("a")])
        poller = make_poller(client)

        poller.start("a", mode="text-to-3d")
        await poller.wait()
        await asyncio.sleep(0.01)

        assert client.fetch_status.await_count == 3
        assert poller.slot.progress.percent == 100.0
        assert poller.slot.progress.phase == "completed"
        assert not poller.is_polling
        message = poller.transcript.message_for("a")
        assert message.kind == "artifact"
        assert message.artifact_url == "https://backend/api/3d/glb/a"

    @pytest.mark.asyncio
    async def test_completed_refreshes_history_wholesale(self):
        """A job missing from the refreshed list disappears from history"""
        client = make_client([_completed("a")])
        client.fetch_history = AsyncMock(return_value=[BackendJob(id="a", status="DONE")])
        poller = make_poller(client)
        poller.history.replace([BackendJob(id="stale", status="RUN")])

        poller.start("a")
        await poller.wait()

        client.fetch_history.assert_awaited_once()
        assert "stale" not in poller.history
        assert "a" in poller.history

    @pytest.mark.asyncio
    async def test_history_refresh_failure_keeps_completion(self):
        client = make_client([_completed("a")])
        client.fetch_history = AsyncMock(side_effect=NetworkError("backend down"))
        poller = make_poller(client)

        poller.start("a")
        await poller.wait()

        assert poller.slot.progress.percent == 100.0
        assert poller.slot.error is None

    @pytest.mark.asyncio
    async def test_failed_surfaces_reason(self):
        failed = Job.build(id="a", status=JobStatus.FAILED, error_message="Mesh generation failed")
        client = make_client([_pending("a", 0), failed])
        poller = make_poller(client)

        poller.start("a")
        await poller.wait()

        assert client.fetch_status.await_count == 2
        assert poller.slot.error == "Mesh generation failed"
        assert poller.slot.progress.phase == "failed"
        assert poller.slot.progress.percent < 100.0
        assert poller.transcript.message_for("a").kind == "error"

    @pytest.mark.asyncio
    async def test_cancelled_has_default_reason(self):
        client = make_client([Job.build(id="a", status=JobStatus.CANCELLED)])
        poller = make_poller(client)

        poller.start("a")
        await poller.wait()

        assert poller.slot.error == "Generation was cancelled"
        assert poller.slot.progress.phase == "cancelled"

    @pytest.mark.asyncio
    async def test_not_found_stops(self):
        client = make_client(NotFound("Job not found"))
        poller = make_poller(client)

        poller.start("gone")
        await poller.wait()

        assert client.fetch_status.await_count == 1
        assert "not found" in poller.slot.error
        assert poller.slot.progress is None
        assert not poller.is_polling


class TestTransientFailures:
    """Network errors keep polling and surface a warning past the threshold"""

    @pytest.mark.asyncio
    async def test_warning_after_threshold_then_recovers(self):
        failures = [NetworkError("offline")] * 3
        client = make_client(failures + [_pending("a", 0), _completed("a")])
        warnings: list[str | None] = []
        poller = make_poller(client, on_update=lambda slot: warnings.append(slot.warning))

        poller.start("a")
        await poller.wait()

        assert client.fetch_status.await_count == 5
        assert warnings[0] is not None
        assert "trouble reaching the server" in warnings[0]
        assert poller.slot.warning is None
        assert poller.consecutive_failures == 0
        assert poller.slot.progress.percent == 100.0

    @pytest.mark.asyncio
    async def test_below_threshold_no_warning(self):
        client = make_client([NetworkError("blip"), _completed("a")])
        warnings: list[str | None] = []
        poller = make_poller(client, on_update=lambda slot: warnings.append(slot.warning))

        poller.start("a")
        await poller.wait()

        assert all(w is None for w in warnings)


class TestLifecycle:
    """At most one live loop; stale responses are never applied"""

    @pytest.mark.asyncio
    async def test_start_b_supersedes_a(self):
        gate = asyncio.Event()

        async def fetch(job_id):
            if job_id == "a":
                await gate.wait()
                return _pending("a", 0)
            return _completed("b")

        client = make_client()
        client.fetch_status = AsyncMock(side_effect=fetch)
        seen: list[str] = []
        poller = make_poller(client, on_update=lambda slot: seen.append(slot.job_id))

        poller.start("a")
        await asyncio.sleep(0)
        poller.start("b")
        gate.set()
        await poller.wait()
        await asyncio.sleep(0.01)

        assert poller.slot.job_id == "b"
        assert poller.slot.job.id == "b"
        assert poller.tracker.get("a") is None
        assert set(seen) == {"b"}

    @pytest.mark.asyncio
    async def test_stop_discards_late_response(self):
        gate = asyncio.Event()

        async def fetch(job_id):
            await gate.wait()
            return _pending(job_id, 0)

        client = make_client()
        client.fetch_status = AsyncMock(side_effect=fetch)
        poller = make_poller(client)

        poller.start("a")
        await asyncio.sleep(0)
        poller.stop()
        gate.set()
        await asyncio.sleep(0.01)

        assert not poller.is_polling
        assert poller.slot.job is None
        assert poller.slot.progress is None

    @pytest.mark.asyncio
    async def test_restart_same_job_keeps_progress(self):
        client = make_client([_pending("a", 0), _completed("a")])
        poller = make_poller(client, interval=10)

        poller.start("a", mode="image-to-3d")
        await asyncio.sleep(0.01)
        first = poller.slot.progress.percent
        poller.start("a")
        await poller.wait()

        assert poller.slot.mode == "image-to-3d"
        assert first > 0
        assert poller.slot.progress.percent == 100.0

    @pytest.mark.asyncio
    async def test_transcript_gets_queued_status(self):
        gate = asyncio.Event()

        async def fetch(job_id):
            await gate.wait()
            return _completed(job_id)

        client = make_client()
        client.fetch_status = AsyncMock(side_effect=fetch)
        poller = make_poller(client)

        poller.start("a")
        assert poller.transcript.message_for("a").text == "Queued..."
        gate.set()
        await poller.wait()


class TestSubmitAndResume:
    @pytest.mark.asyncio
    async def test_submit_text_starts_polling(self):
        client = make_client([_completed("t1")])
        client.submit_text_to_3d = AsyncMock(return_value="t1")
        poller = make_poller(client)

        job_id = await poller.submit(prompt="a medieval sword", chat_id="c1")
        await poller.wait()

        assert job_id == "t1"
        client.submit_text_to_3d.assert_awaited_once_with("a medieval sword", chat_id="c1")
        assert poller.slot.mode == "text-to-3d"
        assert poller.transcript.messages[0].text == "a medieval sword"

    @pytest.mark.asyncio
    async def test_submit_prompt_and_image_is_invalid(self):
        client = make_client()
        client.submit_text_to_3d = AsyncMock()
        poller = make_poller(client)

        with pytest.raises(InvalidInput):
            await poller.submit(prompt="a lamp", image_url="https://img.png")
        client.submit_text_to_3d.assert_not_awaited()
        assert not poller.is_polling

    @pytest.mark.asyncio
    async def test_resume_in_flight_job_from_history(self):
        """Empty slot plus a non-terminal history job resumes without a new submission"""
        client = make_client([_completed("live")])
        client.fetch_history = AsyncMock(
            return_value=[
                BackendJob(id="old", status="DONE"),
                BackendJob(id="live", status="RUN", prompt="a chair"),
            ]
        )
        poller = make_poller(client)

        resumed = await poller.resume_from_history()
        await poller.wait()

        assert resumed == "live"
        client.fetch_status.assert_awaited_with("live")
        assert poller.slot.mode == "text-to-3d"
        assert poller.slot.progress.percent == 100.0

    @pytest.mark.asyncio
    async def test_resume_with_nothing_in_flight(self):
        client = make_client()
        client.fetch_history = AsyncMock(return_value=[BackendJob(id="old", status="DONE")])
        poller = make_poller(client)

        assert await poller.resume_from_history() is None
        assert poller.slot.is_empty
        client.fetch_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_resume_when_history_unavailable(self):
        client = make_client()
        client.fetch_history = AsyncMock(side_effect=NetworkError("backend down"))
        poller = make_poller(client)

        assert await poller.resume_from_history() is None
        assert not poller.history.loaded


class TestTeardownDuringRequests:
    """stop() or a newer start() while submit/resume is awaiting the network"""

    @pytest.mark.asyncio
    async def test_stop_during_submit_does_not_start_polling(self):
        gate = asyncio.Event()

        async def slow_submit(prompt, chat_id=None):
            await gate.wait()
            return "t1"

        client = make_client([_pending("t1", 0)] * 5)
        client.submit_text_to_3d = AsyncMock(side_effect=slow_submit)
        poller = make_poller(client)

        pending = asyncio.create_task(poller.submit(prompt="a lamp"))
        await asyncio.sleep(0)
        poller.stop()
        gate.set()
        job_id = await pending
        await asyncio.sleep(0.01)

        assert job_id == "t1"
        assert not poller.is_polling
        client.fetch_status.assert_not_awaited()
        assert poller.slot.is_empty
        assert poller.transcript.messages == []

    @pytest.mark.asyncio
    async def test_newer_start_during_submit_wins(self):
        gate = asyncio.Event()

        async def slow_submit(prompt, chat_id=None):
            await gate.wait()
            return "t1"

        client = make_client()
        client.fetch_status = AsyncMock(side_effect=lambda job_id: _completed(job_id))
        client.submit_text_to_3d = AsyncMock(side_effect=slow_submit)
        poller = make_poller(client)

        pending = asyncio.create_task(poller.submit(prompt="a lamp"))
        await asyncio.sleep(0)
        poller.start("other")
        gate.set()
        await pending
        await poller.wait()

        assert poller.slot.job_id == "other"
        assert {call.args[0] for call in client.fetch_status.await_args_list} == {"other"}

    @pytest.mark.asyncio
    async def test_stop_during_resume_does_not_start_polling(self):
        gate = asyncio.Event()

        async def slow_history():
            await gate.wait()
            return [BackendJob(id="live", status="RUN")]

        client = make_client([_pending("live", 0)] * 5)
        client.fetch_history = AsyncMock(side_effect=slow_history)
        poller = make_poller(client)

        pending = asyncio.create_task(poller.resume_from_history())
        await asyncio.sleep(0)
        poller.stop()
        gate.set()
        resumed = await pending
        await asyncio.sleep(0.01)

        assert resumed is None
        assert not poller.is_polling
        assert not poller.history.loaded
        client.fetch_status.assert_not_awaited()


class TestMalformedStatus:
    """A malformed status body counts as a failed tick, not a dead loop"""

    @pytest.mark.asyncio
    async def test_malformed_tick_then_completed(self):
        responses = [
            httpx.Response(200, json={"result": "pending"}),
            httpx.Response(200, json={"job_id": "j1", "status": "pending", "result": "queued"}),
            httpx.Response(
                200,
                json={"job_id": "j1", "status": "completed", "result": {"mesh_url": "https://s3/j1.glb"}},
            ),
        ]
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/3d/history":
                return httpx.Response(200, json=[])
            calls.append(request.url.path)
            return responses[len(calls) - 1]

        client = HydrillaClient(
            api_url="https://api.test",
            backend_url="https://backend.test",
            transport=httpx.MockTransport(handler),
        )
        poller = make_poller(client)

        async with client:
            poller.start("j1")
            await poller.wait()

        assert calls == ["/status/j1"] * 3
        assert poller.slot.progress.percent == 100.0
        assert poller.slot.error is None

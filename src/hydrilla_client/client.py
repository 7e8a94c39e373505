"""Async HTTP client for the generation API and the bookkeeping backend.

Two services sit behind this client:

* the generation API (``settings.api_url``): submit text/image jobs, fetch
  status, cancel;
* the bookkeeping backend (``settings.backend_url``): register job metadata,
  history, rename/delete, user sync, chats, early-access payments.

Transport failures raise ``NetworkError`` (``GpuOfflineError`` for the
generation API); non-2xx responses raise ``ServerError`` or one of its more
specific siblings. Best-effort calls (job registration, GPU-offline
notification) log and never raise.
"""

import asyncio
import logging
import mimetypes
import re
from pathlib import Path
from typing import Any, Awaitable, Callable, Coroutine

import httpx

from hydrilla_client.config import BACKEND_URL_ENV, Settings, settings as default_settings
from hydrilla_client.errors import (
    AlreadyExists,
    AuthRequired,
    GpuOfflineError,
    HydrillaError,
    InvalidInput,
    NetworkError,
    NotFound,
    ServerError,
)
from hydrilla_client.models import (
    BackendJob,
    Chat,
    EarlyAccessPayment,
    EarlyAccessStatus,
    Job,
    PreviewImage,
    QueueSnapshot,
    UserProfile,
)

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str | None]]
# A path on disk, or an in-memory (filename, content) pair
ImageFile = str | Path | tuple[str, bytes]

# Upload constraints (same as the web upload form)
_MAX_IMAGE_BYTES = 10 * 1024 * 1024  # 10 MB
_ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif"}

# Preview images that were never registered live under a conventional S3 path
_PREVIEW_BUCKET = "hunyuan3d-outputs"
_PREVIEW_REGION = "us-east-1"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_ALREADY_HAS_ACCESS = "ALREADY_HAS_ACCESS"


def static_token_provider(token: str | None) -> TokenProvider:
    """Wrap a fixed bearer token (e.g. from ``HYDRILLA_AUTH_TOKEN``) as a provider."""

    async def _provider() -> str | None:
        return token

    return _provider


def _error_message(resp: httpx.Response, fallback: str) -> str:
    """Pull the server's message out of an error response."""
    try:
        data = resp.json()
    except ValueError:
        return resp.text.strip() or fallback
    if isinstance(data, dict):
        message = data.get("error") or data.get("message") or data.get("detail")
        if isinstance(message, str) and message:
            return message
    return resp.text.strip() or fallback


def _json(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError as exc:
        raise ServerError(
            "Invalid response format from server", status_code=resp.status_code
        ) from exc


def _load_image(image_file: ImageFile) -> tuple[str, bytes, str]:
    """Read and validate an image for upload.

    Returns:
        ``(filename, content, mime_type)`` ready for a multipart part.

    Raises:
        InvalidInput: Missing file, non-image type or larger than 10 MB.
    """
    if isinstance(image_file, tuple):
        filename, content = image_file
    else:
        path = Path(image_file)
        if not path.is_file():
            raise InvalidInput(f"Image file not found: {path}")
        filename, content = path.name, path.read_bytes()

    mime_type = mimetypes.guess_type(filename)[0] or ""
    if mime_type not in _ALLOWED_IMAGE_TYPES:
        raise InvalidInput(f"Please select an image file (JPEG, PNG, WebP, GIF), got {filename}")
    if len(content) > _MAX_IMAGE_BYTES:
        raise InvalidInput("File size must be less than 10MB")
    return filename, content, mime_type


def _require_text(value: str | None, what: str) -> str:
    text = (value or "").strip()
    if not text:
        raise InvalidInput(f"Please enter a {what}")
    return text


class HydrillaClient:
    """Typed boundary to the generation API and bookkeeping backend.

    Use as an async context manager so background registrations are flushed
    and the connection pool is closed::

        async with HydrillaClient(token_provider=session.get_token) as client:
            job_id = await client.submit_text_to_3d("a medieval sword")
    """

    def __init__(
        self,
        *,
        api_url: str | None = None,
        backend_url: str | None = None,
        token_provider: TokenProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        config: Settings | None = None,
    ) -> None:
        self.config = config or default_settings
        self.api_url = (api_url or self.config.api_url).rstrip("/")
        self.backend_url = (backend_url or self.config.resolved_backend_url()).rstrip("/")
        self._token_provider = token_provider
        self._http = httpx.AsyncClient(
            timeout=self.config.request_timeout_seconds,
            transport=transport,
        )
        self._background: set[asyncio.Task] = set()

    async def __aenter__(self) -> "HydrillaClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.drain_background()
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _backend(self, path: str) -> str:
        return f"{self.backend_url}{path}"

    def _api(self, path: str) -> str:
        return f"{self.api_url}{path}"

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        """Run a best-effort coroutine without awaiting it."""
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain_background(self) -> None:
        """Wait for fire-and-forget calls (registrations, notifications) to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _get_token(self) -> str | None:
        if self._token_provider is None:
            return None
        return await self._token_provider()

    async def _auth_headers(self, *, required: bool = False) -> dict[str, str]:
        token = await self._get_token()
        if token:
            return {"Authorization": f"Bearer {token}"}
        if required:
            raise AuthRequired()
        return {}

    def _unreachable_message(self, url: str, exc: Exception) -> str:
        if url.startswith(self.backend_url):
            return (
                f"Cannot connect to backend at {self.backend_url}. "
                f"Check {BACKEND_URL_ENV} and that the server is running. ({exc})"
            )
        return f"Cannot reach {url}: {exc}"

    async def _send(
        self,
        method: str,
        url: str,
        *,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, converting transport failures to ``NetworkError``."""
        if timeout is not None:
            kwargs["timeout"] = timeout
        logger.debug("%s %s", method, url)
        try:
            return await self._http.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise NetworkError(
                f"Request timeout: {url} took too long to respond", url=url
            ) from exc
        except httpx.TransportError as exc:
            raise NetworkError(self._unreachable_message(url, exc), url=url) from exc

    async def _request(
        self,
        method: str,
        url: str,
        *,
        fallback: str = "Request failed",
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request and raise the matching error for non-2xx responses."""
        resp = await self._send(method, url, **kwargs)
        if resp.is_success:
            return resp

        message = _error_message(resp, fallback)
        logger.error(
            "%s %s returned %s: %s", method, url, resp.status_code, resp.text[:500]
        )
        if resp.status_code == 404:
            raise NotFound(message)
        if resp.status_code == 401:
            raise AuthRequired(message)
        raise ServerError(message, status_code=resp.status_code)

    async def _submit(
        self,
        path: str,
        fields: dict[str, str],
        *,
        image: tuple[str, bytes, str] | None = None,
        fallback: str,
    ) -> dict[str, Any]:
        """POST a multipart form to the generation API."""
        url = self._api(path)
        parts: dict[str, Any] = {name: (None, value) for name, value in fields.items()}
        if image is not None:
            parts["image_file"] = image
        try:
            resp = await self._request("POST", url, files=parts, fallback=fallback)
        except NetworkError as exc:
            logger.error("Generation API unreachable at %s: %s", url, exc)
            self._spawn(self.notify_gpu_offline(str(exc)))
            raise GpuOfflineError(url=url) from exc
        data = _json(resp)
        if not isinstance(data, dict):
            raise ServerError("Invalid response format from server", status_code=resp.status_code)
        return data

    # ------------------------------------------------------------------
    # Generation API
    # ------------------------------------------------------------------

    async def generate_preview_image(self, prompt: str) -> PreviewImage:
        """Generate a 2D preview image for a text prompt."""
        prompt = _require_text(prompt, "prompt")
        data = await self._submit(
            "/text-to-image",
            {"prompt": prompt},
            fallback="Failed to generate preview image",
        )
        try:
            return PreviewImage.model_validate(data)
        except ValueError as exc:
            raise ServerError(f"Malformed preview response: {exc}") from exc

    async def submit_text_to_3d(self, prompt: str, *, chat_id: str | None = None) -> str:
        """Submit a text-to-3D job and return its job id."""
        prompt = _require_text(prompt, "prompt")
        data = await self._submit("/text-to-3d", {"prompt": prompt}, fallback="Failed to submit job")
        job_id = self._job_id(data)
        logger.info("Submitted text-to-3d job %s", job_id)
        self._spawn(self.register_job(job_id, prompt=prompt, chat_id=chat_id))
        return job_id

    async def submit_image_to_3d(
        self,
        image_url: str | None = None,
        image_file: ImageFile | None = None,
        *,
        preview_job_id: str | None = None,
        chat_id: str | None = None,
    ) -> str:
        """Submit an image-to-3D job from exactly one of a URL or a file.

        Raises:
            InvalidInput: Neither or both inputs were given, or the file is invalid.
        """
        image_url = (image_url or "").strip() or None
        if (image_url is None) == (image_file is None):
            raise InvalidInput("Provide exactly one of an image URL or an image file")

        if image_file is not None:
            image = _load_image(image_file)
            data = await self._submit("/image-to-3d", {}, image=image, fallback="Failed to submit job")
        else:
            data = await self._submit(
                "/image-to-3d", {"image_url": image_url}, fallback="Failed to submit job"
            )

        job_id = self._job_id(data)
        logger.info("Submitted image-to-3d job %s", job_id)
        self._spawn(
            self.register_job(
                job_id,
                image_url=image_url or "uploaded_file",
                preview_job_id=preview_job_id,
                chat_id=chat_id,
            )
        )
        return job_id

    @staticmethod
    def _job_id(data: dict[str, Any]) -> str:
        job_id = data.get("job_id")
        if not job_id:
            raise ServerError("Generation API response did not include a job_id")
        return str(job_id)

    async def fetch_status(self, job_id: str) -> Job:
        """Fetch the authoritative status of a job.

        Raises:
            NotFound: The backend has no such job.
            NetworkError: Transport failure.
            ServerError: Any other non-2xx, or an unparsable payload.
        """
        resp = await self._request(
            "GET", self._api(f"/status/{job_id}"), fallback="Failed to fetch status"
        )
        data = _json(resp)
        if not isinstance(data, dict):
            raise ServerError(f"Malformed status payload for job {job_id}")
        try:
            return Job.from_payload(data, artifact_fallback=self.proxy_glb_url(job_id))
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise ServerError(f"Malformed status payload for job {job_id}: {exc}") from exc

    async def cancel_job(self, job_id: str) -> None:
        await self._request("POST", self._api(f"/cancel/{job_id}"), fallback="Failed to cancel job")
        logger.info("Cancelled job %s", job_id)

    # ------------------------------------------------------------------
    # Bookkeeping backend: best-effort calls
    # ------------------------------------------------------------------

    async def register_job(
        self,
        job_id: str,
        *,
        prompt: str | None = None,
        image_url: str | None = None,
        preview_job_id: str | None = None,
        preview_image_url: str | None = None,
        chat_id: str | None = None,
    ) -> None:
        """Record job metadata with the backend. Failures are logged only."""
        body: dict[str, Any] = {"job_id": job_id}
        optional = {
            "prompt": prompt,
            "imageUrl": image_url,
            "previewJobId": preview_job_id,
            "previewImageUrl": preview_image_url,
            "chatId": chat_id,
        }
        body.update({key: value for key, value in optional.items() if value})
        try:
            headers = await self._auth_headers()
            await self._request(
                "POST",
                self._backend("/api/3d/register-job"),
                json=body,
                headers=headers,
                fallback="Failed to register job",
            )
            logger.info("Registered job %s with backend", job_id)
        except Exception as exc:
            logger.warning("Job registration failed for %s: %s", job_id, exc)

    async def register_job_with_preview(
        self,
        preview_id: str,
        preview_image_url: str,
        prompt: str,
        *,
        chat_id: str | None = None,
    ) -> None:
        await self.register_job(
            preview_id,
            prompt=prompt,
            preview_image_url=preview_image_url,
            chat_id=chat_id,
        )

    async def notify_gpu_offline(self, error_message: str) -> None:
        """Tell the backend the generation API looks offline. Never raises."""
        try:
            headers = await self._auth_headers()
            await self._request(
                "POST",
                self._backend("/api/3d/notify-gpu-offline"),
                json={"errorMessage": error_message},
                headers=headers,
                timeout=self.config.notify_timeout_seconds,
            )
            logger.info("GPU offline notification sent")
        except Exception as exc:
            logger.warning("Failed to send GPU offline notification: %s", exc)

    # ------------------------------------------------------------------
    # Bookkeeping backend: queue, uploads
    # ------------------------------------------------------------------

    async def upload_image(self, image_file: ImageFile) -> str:
        """Upload an image to backend storage and return its public URL."""
        filename, content, mime_type = _load_image(image_file)
        headers = await self._auth_headers()
        resp = await self._request(
            "POST",
            self._backend("/api/3d/upload-image"),
            files={"image": (filename, content, mime_type)},
            headers=headers,
            fallback="Failed to upload image",
        )
        data = _json(resp)
        if not isinstance(data, dict) or not data.get("url"):
            raise ServerError("Upload response did not include a url")
        return data["url"]

    async def fetch_queue_info(self) -> QueueSnapshot | None:
        """Fetch global queue state for time estimates before submitting.

        Raises:
            GpuOfflineError: The service is unavailable (503, timeout,
                ``api_available: false`` or unreachable).

        Returns:
            The snapshot, or None when the response could not be interpreted.
        """
        url = self._backend("/api/3d/queue/info")
        try:
            resp = await self._send("GET", url, timeout=self.config.queue_info_timeout_seconds)
        except NetworkError as exc:
            raise GpuOfflineError(url=url) from exc

        if not resp.is_success:
            logger.warning("Queue info returned %s", resp.status_code)
            raise GpuOfflineError(url=url)

        try:
            data = resp.json()
        except ValueError:
            logger.warning("Queue info response was not JSON")
            return None
        if not isinstance(data, dict):
            return None
        if data.get("api_available") is False:
            raise GpuOfflineError(url=url)

        queue_length = data.get("queue_length") or 0
        currently_processing = bool(data.get("currently_processing"))
        wait = data.get("estimated_wait_for_new_job_seconds") or 0
        return QueueSnapshot(
            position=0,
            jobs_ahead=queue_length + (1 if currently_processing else 0),
            estimated_wait_seconds=wait,
            estimated_total_seconds=wait + (data.get("estimated_time_per_job_seconds") or 130),
            queue_length=queue_length,
            currently_processing=currently_processing,
            estimated_wait_for_preview_seconds=data.get("estimated_wait_for_preview_seconds") or 0,
            estimated_preview_time_seconds=data.get("estimated_preview_time_seconds") or 20,
            api_available=True,
        )

    # ------------------------------------------------------------------
    # Bookkeeping backend: history and jobs (auth required)
    # ------------------------------------------------------------------

    async def fetch_history(self) -> list[BackendJob]:
        """Return the signed-in user's jobs, newest first as the backend orders them.

        Raises:
            AuthRequired: No token available.
        """
        headers = await self._auth_headers(required=True)
        resp = await self._request(
            "GET",
            self._backend("/api/3d/history"),
            headers={**headers, "Cache-Control": "no-cache"},
            timeout=self.config.history_timeout_seconds,
            fallback="Failed to fetch history",
        )
        if not resp.text.strip():
            return []
        data = _json(resp)
        if isinstance(data, list):
            items = data
        elif isinstance(data, dict):
            items = data.get("jobs") or []
        else:
            raise ServerError("Invalid history response: expected a list or an object")
        if not isinstance(items, list):
            raise ServerError("Invalid history response: jobs is not a list")
        try:
            return [BackendJob.model_validate(item) for item in items]
        except ValueError as exc:
            raise ServerError(f"Invalid history record: {exc}") from exc

    async def update_job_name(self, job_id: str, name: str) -> None:
        name = _require_text(name, "name")
        headers = await self._auth_headers(required=True)
        await self._request(
            "PATCH",
            self._backend(f"/api/3d/jobs/{job_id}/name"),
            json={"name": name},
            headers=headers,
            fallback="Failed to update job name",
        )

    async def delete_job(self, job_id: str) -> None:
        headers = await self._auth_headers(required=True)
        await self._request(
            "DELETE",
            self._backend(f"/api/3d/jobs/{job_id}"),
            headers=headers,
            fallback="Failed to delete job",
        )

    async def sync_user(self) -> dict[str, Any] | None:
        """Create or refresh the signed-in user's backend record."""
        headers = await self._auth_headers(required=True)
        resp = await self._request(
            "POST",
            self._backend("/api/3d/sync-user"),
            headers=headers,
            fallback="Failed to sync user",
        )
        data = _json(resp)
        return data.get("user") if isinstance(data, dict) else None

    async def get_current_user(self) -> UserProfile:
        headers = await self._auth_headers(required=True)
        resp = await self._request(
            "GET", self._backend("/api/3d/me"), headers=headers, fallback="Failed to load profile"
        )
        return UserProfile.model_validate(_json(resp))

    # ------------------------------------------------------------------
    # Bookkeeping backend: chats
    # ------------------------------------------------------------------

    async def fetch_chats(self) -> list[Chat]:
        """List the user's chats. Returns an empty list when they can't be loaded."""
        try:
            headers = await self._auth_headers()
            resp = await self._request(
                "GET",
                self._backend("/api/3d/chats"),
                headers={**headers, "Cache-Control": "no-cache"},
                fallback="Failed to fetch chats",
            )
            data = _json(resp)
            return [Chat.model_validate(item) for item in (data or {}).get("chats") or []]
        except (HydrillaError, ValueError) as exc:
            logger.warning("Failed to fetch chats: %s", exc)
            return []

    async def fetch_chat(self, chat_id: str) -> tuple[Chat, list[BackendJob]]:
        headers = await self._auth_headers()
        resp = await self._request(
            "GET",
            self._backend(f"/api/3d/chats/{chat_id}"),
            headers=headers,
            fallback="Failed to fetch chat",
        )
        data = _json(resp)
        chat = Chat.model_validate(data["chat"])
        jobs = [BackendJob.model_validate(item) for item in data.get("jobs") or []]
        return chat, jobs

    async def create_chat(self, name: str | None = None) -> Chat:
        headers = await self._auth_headers()
        resp = await self._request(
            "POST",
            self._backend("/api/3d/chats"),
            json={"name": name or "New Chat"},
            headers=headers,
            fallback="Failed to create chat",
        )
        return Chat.model_validate(_json(resp)["chat"])

    async def get_or_create_active_chat(self) -> Chat | None:
        """Most recent chat (the backend creates one if needed), or None on any failure."""
        try:
            headers = await self._auth_headers()
            resp = await self._request(
                "GET",
                self._backend("/api/3d/chats/active"),
                headers=headers,
                fallback="Failed to get active chat",
            )
            chat = _json(resp).get("chat")
            return Chat.model_validate(chat) if chat else None
        except (HydrillaError, ValueError, AttributeError) as exc:
            logger.warning("Failed to get active chat: %s", exc)
            return None

    async def update_chat_name(self, chat_id: str, name: str) -> None:
        name = _require_text(name, "name")
        headers = await self._auth_headers()
        await self._request(
            "PATCH",
            self._backend(f"/api/3d/chats/{chat_id}/name"),
            json={"name": name},
            headers=headers,
            fallback="Failed to update chat name",
        )

    async def delete_chat(self, chat_id: str) -> None:
        headers = await self._auth_headers()
        await self._request(
            "DELETE",
            self._backend(f"/api/3d/chats/{chat_id}"),
            headers=headers,
            fallback="Failed to delete chat",
        )

    # ------------------------------------------------------------------
    # Bookkeeping backend: early access
    # ------------------------------------------------------------------

    async def create_early_access_payment(self, email: str) -> EarlyAccessPayment:
        """Create a checkout link for early access.

        Raises:
            InvalidInput: ``email`` is not an email address.
            AlreadyExists: The email already has early access.
        """
        email = (email or "").strip()
        if not _EMAIL_RE.match(email):
            raise InvalidInput(f"Invalid email address: {email!r}")

        headers = await self._auth_headers()
        url = self._backend("/api/payments/early-access/create")
        resp = await self._send("POST", url, json={"email": email}, headers=headers)

        if not resp.is_success:
            try:
                body = resp.json()
            except ValueError:
                body = None
            body = body if isinstance(body, dict) else {}
            if (
                resp.status_code == 409
                or body.get("status") == _ALREADY_HAS_ACCESS
                or body.get("error") == _ALREADY_HAS_ACCESS
            ):
                raise AlreadyExists(
                    body.get("message") or "This email already has early access",
                    payment=body.get("payment"),
                )
            message = _error_message(resp, f"HTTP {resp.status_code}: {resp.reason_phrase}")
            logger.error(
                "Payment creation failed",
                extra={"status_code": resp.status_code, "backend_url": self.backend_url},
            )
            raise ServerError(message, status_code=resp.status_code)

        data = _json(resp)
        logger.info("Payment link created", extra={"has_link": bool(data.get("paymentLink"))})
        return EarlyAccessPayment(
            payment_id=data.get("sessionId") or data.get("paymentLink") or "pending",
            payment_link=data.get("paymentLink"),
            status=data.get("status") or "pending",
        )

    async def check_early_access(self, email: str | None = None) -> EarlyAccessStatus:
        """Check whether the user (or email) has paid for early access. Never raises."""
        params = {"email": email} if email else None
        try:
            headers = await self._auth_headers()
            resp = await self._request(
                "GET",
                self._backend("/api/payments/early-access/check"),
                params=params,
                headers=headers,
            )
            data = _json(resp)
            return EarlyAccessStatus(
                has_access=bool(data.get("hasAccess")),
                access_info=data.get("accessInfo") or None,
            )
        except (HydrillaError, ValueError, AttributeError) as exc:
            logger.debug("Early access check failed: %s", exc)
            return EarlyAccessStatus()

    # ------------------------------------------------------------------
    # URL helpers
    # ------------------------------------------------------------------

    def proxy_glb_url(self, job_id: str) -> str:
        """Backend proxy for a job's GLB (avoids CORS on the storage bucket)."""
        return self._backend(f"/api/3d/glb/{job_id}")

    def glb_url(self, job: Job) -> str | None:
        if not job.result_artifact_url:
            return None
        return self.proxy_glb_url(job.id)

    @staticmethod
    def preview_image_url(job: Job) -> str:
        if job.preview_image_url:
            return job.preview_image_url
        return (
            f"https://{_PREVIEW_BUCKET}.s3.{_PREVIEW_REGION}.amazonaws.com"
            f"/preview/{job.id}/preview_image.png"
        )

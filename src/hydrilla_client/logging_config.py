"""Structured JSON logging for the Hydrilla client.

Call ``configure_logging()`` once at startup (the CLI does this in ``main``).
After that, every ``logging.getLogger(__name__)`` call produces structured
JSON lines on stderr.

The job poller binds the id of the job it is tracking with ``bind_job_id`` so
all log records emitted while a polling task runs automatically include
``job_id``.
"""

import json
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

# ── Context variable ──────────────────────────────────────────────────────────
# Stores the job currently being polled in async context so any logger can read it.
_job_id_var: ContextVar[str] = ContextVar("job_id", default="")


def get_job_id() -> str:
    """Return the job ID bound to the current async context (empty string if none)."""
    return _job_id_var.get()


@contextmanager
def bind_job_id(job_id: str) -> Iterator[None]:
    """Bind ``job_id`` to every log record emitted inside the block."""
    token = _job_id_var.set(job_id)
    try:
        yield
    finally:
        _job_id_var.reset(token)


# ── JSON log formatter ────────────────────────────────────────────────────────


# Attributes every LogRecord carries; anything else on a record came from ``extra=``
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "taskName"}

# Poll loops run in tasks named ``poll-<job_id>``
_POLL_TASK_PREFIX = "poll-"


class _JsonFormatter(logging.Formatter):
    """Format log records as single-line JSON objects.

    Records emitted from a poll task also carry ``job_id`` and the task name,
    so interleaved loops (a superseded one winding down next to its
    replacement) can be told apart.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        job_id = get_job_id()
        if job_id:
            payload["job_id"] = job_id
            task_name = getattr(record, "taskName", None)
            if task_name and task_name.startswith(_POLL_TASK_PREFIX):
                payload["task"] = task_name

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        payload.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        )
        return json.dumps(payload, default=str)


# ── Public configuration entry-point ─────────────────────────────────────────


def configure_logging(level: str = "INFO") -> None:
    """Replace the root logger's handlers with a single JSON handler.

    Logs go to stderr so they never interleave with the CLI's stdout output.

    Args:
        level: Logging level string, e.g. ``"INFO"``, ``"DEBUG"``, ``"WARNING"``.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(_JsonFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    # httpx logs every request at INFO
    for noisy in ("httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(
        "Structured JSON logging initialised",
        extra={"log_level": level.upper()},
    )

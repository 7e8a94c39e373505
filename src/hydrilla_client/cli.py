#!/usr/bin/env python3
# CLI entry point for the Hydrilla 3D generation client
# Submit jobs, watch them to completion and manage job history

import argparse
import asyncio
import sys
from pathlib import Path

from hydrilla_client.client import HydrillaClient, static_token_provider
from hydrilla_client.config import BACKEND_URL_ENV, settings
from hydrilla_client.errors import (
    AlreadyExists,
    AuthRequired,
    GpuOfflineError,
    HydrillaError,
    InvalidInput,
    NetworkError,
    NotFound,
)
from hydrilla_client.logging_config import configure_logging
from hydrilla_client.models import JobStatus
from hydrilla_client.poller import JobStatusPoller
from hydrilla_client.presentation import (
    render_library,
    render_slot,
    render_transcript,
    render_viewer,
)
from hydrilla_client.progress import format_duration
from hydrilla_client.state import GeneratingSlot, SessionState

# User id recorded for the static-token CLI session
CLI_USER = "cli"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def _print_update(slot: GeneratingSlot) -> None:
    print(render_slot(slot), flush=True)


async def watch(poller: JobStatusPoller) -> int:
    """Block until the poller's job ends. Returns the process exit code."""
    await poller.wait()
    slot = poller.slot
    print()
    print(render_transcript(poller.transcript))
    if slot.job is not None and slot.job.status is JobStatus.COMPLETED:
        print("\n" + render_viewer(slot.job, poller.client))
        return EXIT_OK
    return EXIT_FAILED


async def run(args: argparse.Namespace, client: HydrillaClient, session: SessionState) -> int:
    """Execute one parsed command against ``client``."""
    command = args.command

    if command in ("text", "image"):
        poller = JobStatusPoller(
            client,
            interval=args.interval,
            on_update=_print_update if args.watch else None,
        )
        if command == "text":
            job_id = await poller.submit(prompt=args.prompt, chat_id=args.chat_id)
        else:
            job_id = await poller.submit(
                image_url=args.url,
                image_file=Path(args.file) if args.file else None,
                chat_id=args.chat_id,
            )
        print(f"Submitted job: {job_id}")
        if not args.watch:
            poller.stop()
            print(f"Track it with: hydrilla watch {job_id}")
            return EXIT_OK
        return await watch(poller)

    if command == "preview":
        preview = await client.generate_preview_image(args.prompt)
        print(f"Preview id: {preview.preview_id}")
        print(f"Image: {preview.image_url}")
        if args.register:
            await client.register_job_with_preview(
                preview.preview_id, preview.image_url, args.prompt, chat_id=args.chat_id
            )
        return EXIT_OK

    if command == "status":
        job = await client.fetch_status(args.job_id)
        print(render_viewer(job, client))
        return EXIT_OK

    if command == "watch":
        poller = JobStatusPoller(client, interval=args.interval, on_update=_print_update)
        if args.job_id:
            poller.start(args.job_id, mode=args.mode)
        else:
            await session.ensure_user_synced(client)
            job_id = await poller.resume_from_history()
            if job_id is None:
                print("No in-flight jobs to resume.")
                return EXIT_OK
            print(f"Resuming job: {job_id}")
        return await watch(poller)

    if command == "cancel":
        await client.cancel_job(args.job_id)
        print(f"Cancelled job: {args.job_id}")
        return EXIT_OK

    if command == "history":
        await session.ensure_user_synced(client)
        jobs = await client.fetch_history()
        print(render_library(jobs, client))
        return EXIT_OK

    if command == "rename":
        await client.update_job_name(args.job_id, args.name)
        print(f"Renamed {args.job_id} to {args.name!r}")
        return EXIT_OK

    if command == "delete":
        await client.delete_job(args.job_id)
        print(f"Deleted job: {args.job_id}")
        return EXIT_OK

    if command == "me":
        await session.ensure_user_synced(client)
        profile = await client.get_current_user()
        for key, value in {**profile.user, **profile.stats}.items():
            print(f"  {key}: {value}")
        return EXIT_OK

    if command == "queue":
        snapshot = await client.fetch_queue_info()
        if snapshot is None:
            print("Queue information is unavailable right now.")
            return EXIT_OK
        print(f"Jobs ahead: {snapshot.jobs_ahead}")
        print(f"Estimated wait: {format_duration(snapshot.estimated_wait_seconds or 0)}")
        print(f"Estimated total: {format_duration(snapshot.estimated_total_seconds or 0)}")
        print(f"Preview wait: {format_duration(snapshot.estimated_wait_for_preview_seconds)}")
        return EXIT_OK

    if command == "early-access":
        if args.check:
            status = await client.check_early_access(args.email)
            print("Early access: " + ("yes" if status.has_access else "no"))
            return EXIT_OK
        payment = await client.create_early_access_payment(args.email)
        print(f"Payment: {payment.payment_id} ({payment.status})")
        if payment.payment_link:
            print(f"Complete checkout at: {payment.payment_link}")
        return EXIT_OK

    raise InvalidInput(f"Unknown command: {command}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hydrilla",
        description="Hydrilla - generate 3D models from text or images",
    )
    parser.add_argument(
        "--token",
        help="Bearer token for the backend (or set HYDRILLA_AUTH_TOKEN env var)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help=f"Log level (default: {settings.log_level})",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def add_watch_options(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--interval",
            type=float,
            default=settings.poll_interval_seconds,
            help=f"Seconds between status polls (default: {settings.poll_interval_seconds})",
        )

    text = sub.add_parser("text", help="Generate a 3D model from a text prompt")
    text.add_argument("prompt")
    text.add_argument("--chat-id", help="Attach the job to a chat")
    text.add_argument("--watch", action="store_true", help="Poll until the job finishes")
    add_watch_options(text)

    image = sub.add_parser("image", help="Generate a 3D model from an image")
    source = image.add_mutually_exclusive_group(required=True)
    source.add_argument("--url", help="Public image URL")
    source.add_argument("--file", help="Local image file (JPEG, PNG, WebP, GIF; max 10MB)")
    image.add_argument("--chat-id", help="Attach the job to a chat")
    image.add_argument("--watch", action="store_true", help="Poll until the job finishes")
    add_watch_options(image)

    preview = sub.add_parser("preview", help="Generate a 2D preview image for a prompt")
    preview.add_argument("prompt")
    preview.add_argument("--register", action="store_true", help="Save the preview to history")
    preview.add_argument("--chat-id", help="Attach the preview to a chat")

    status = sub.add_parser("status", help="Show the current status of a job")
    status.add_argument("job_id")

    watch_cmd = sub.add_parser(
        "watch", help="Poll a job until it finishes (default: resume from history)"
    )
    watch_cmd.add_argument("job_id", nargs="?")
    watch_cmd.add_argument("--mode", choices=["text-to-3d", "image-to-3d"])
    add_watch_options(watch_cmd)

    cancel = sub.add_parser("cancel", help="Cancel a job")
    cancel.add_argument("job_id")

    sub.add_parser("history", help="List your jobs")

    rename = sub.add_parser("rename", help="Rename a job")
    rename.add_argument("job_id")
    rename.add_argument("name")

    delete = sub.add_parser("delete", help="Delete a job from history")
    delete.add_argument("job_id")

    sub.add_parser("me", help="Show your profile and usage stats")
    sub.add_parser("queue", help="Show current queue length and wait estimates")

    early = sub.add_parser("early-access", help="Buy or check early access")
    early.add_argument("email", nargs="?")
    early.add_argument("--check", action="store_true", help="Only check access status")

    return parser


def describe_error(exc: HydrillaError) -> str:
    """Turn a client error into a message the user can act on."""
    if isinstance(exc, AuthRequired):
        return f"{exc}. Set HYDRILLA_AUTH_TOKEN or pass --token."
    if isinstance(exc, GpuOfflineError):
        return str(exc)
    if isinstance(exc, NetworkError):
        return f"{exc}\nCheck your connection and {BACKEND_URL_ENV}."
    if isinstance(exc, NotFound):
        return f"Not found: {exc}"
    if isinstance(exc, AlreadyExists):
        return f"{exc}. No payment is needed."
    return str(exc)


async def _main(args: argparse.Namespace) -> int:
    session = SessionState()
    token = args.token or settings.auth_token
    if token:
        session.sign_in(CLI_USER, static_token_provider(token))
    async with HydrillaClient(token_provider=session.get_token) as client:
        return await run(args, client, session)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level or settings.log_level)

    if args.command == "early-access" and not args.email and not args.check:
        parser.error("early-access requires an email unless --check is given")

    try:
        code = asyncio.run(_main(args))
    except InvalidInput as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(EXIT_USAGE)
    except HydrillaError as exc:
        print(f"❌ {describe_error(exc)}", file=sys.stderr)
        sys.exit(EXIT_FAILED)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)

    sys.exit(code)


if __name__ == "__main__":
    main()

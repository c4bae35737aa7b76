"""fotolokashen-sync – command line front end.

Sign in through the browser, upload photos to a location and manage the
offline queue from a terminal.

Example
-------
    fotolokashen-sync login
    fotolokashen-sync callback 'fotolokashen://oauth-callback?code=...'
    fotolokashen-sync upload IMG_0001.jpg --location 456 --lat 34.05 --lng -118.24
    fotolokashen-sync sync

Every command prints a JSON document; failures go to stderr as the error's
payload and exit with status 1.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
import webbrowser
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

from fotolokashen_sync.config import ClientConfig
from fotolokashen_sync.context import SessionContext, open_session
from fotolokashen_sync.errors import FotolokashenError
from fotolokashen_sync.upload.models import UploadJob
from fotolokashen_sync.utils.logging import configure_logging

Handler = Callable[[SessionContext, argparse.Namespace], Awaitable[Any]]


# --------------------------------------------------------------------------- #
# Environment helpers
# --------------------------------------------------------------------------- #
def _load_env_file(env_path: Path | None) -> None:
    """Load KEY=VALUE pairs from a .env style file into *os.environ*."""
    if env_path is None or not env_path.exists():
        return

    for raw in env_path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, val = line.split("=", 1)
        key = key.strip()
        if key and key not in os.environ:
            os.environ[key] = val.strip()


def _emit(payload: Any, *, stream=None) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str), file=stream or sys.stdout)


# --------------------------------------------------------------------------- #
# Commands
# --------------------------------------------------------------------------- #
async def _cmd_login(ctx: SessionContext, args: argparse.Namespace) -> Any:
    url = ctx.auth.start_login(open_browser=None if args.no_browser else webbrowser.open)
    return {"state": ctx.auth.state.value, "authorize_url": url}


async def _cmd_callback(ctx: SessionContext, args: argparse.Namespace) -> Any:
    credential = await ctx.auth.handle_callback(args.url)
    return {
        "state": ctx.auth.state.value,
        "subject_id": credential.subject_id,
        "expires_at": int(credential.expires_at),
    }


async def _cmd_status(ctx: SessionContext, args: argparse.Namespace) -> Any:
    credential = ctx.store.load()
    return {
        "state": ctx.auth.state.value,
        "subject_id": credential.subject_id if credential else None,
        "expires_at": int(credential.expires_at) if credential else None,
        "needs_refresh": ctx.store.needs_refresh() if credential else None,
        "queued_uploads": len(ctx.queue),
    }


async def _cmd_upload(ctx: SessionContext, args: argparse.Namespace) -> Any:
    try:
        image_bytes = Path(args.image).read_bytes()
    except OSError as exc:
        raise SystemExit(f"Cannot read image: {exc}") from None
    job = UploadJob.new(
        image_bytes,
        args.location,
        caption=args.caption,
        gps_latitude=args.lat,
        gps_longitude=args.lng,
        gps_altitude=args.alt,
        gps_accuracy=args.accuracy,
    )
    outcome = await ctx.uploads.submit(job)
    if outcome.photo is not None:
        return {"status": "uploaded", "photo_id": outcome.photo.id, "url": outcome.photo.url}
    return {
        "status": "queued",
        "client_id": job.client_id,
        "error": outcome.error.to_payload() if outcome.error else None,
    }


async def _cmd_sync(ctx: SessionContext, args: argparse.Namespace) -> Any:
    report = await ctx.uploads.sync()
    return {
        "uploaded": [photo.id for photo in report.succeeded],
        "kept": [job.client_id for job in report.retried],
        "dropped": [exc.to_payload() for exc in report.dropped],
        "stopped_by": report.stopped_by.to_payload() if report.stopped_by else None,
    }


async def _cmd_queue(ctx: SessionContext, args: argparse.Namespace) -> Any:
    return [job.to_record() for job in ctx.queue.jobs()]


async def _cmd_logout(ctx: SessionContext, args: argparse.Namespace) -> Any:
    await ctx.auth.logout()
    return {"state": ctx.auth.state.value}


async def _cmd_config(ctx: SessionContext, args: argparse.Namespace) -> Any:
    return ctx.config.describe()


# --------------------------------------------------------------------------- #
# Entrypoint
# --------------------------------------------------------------------------- #
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fotolokashen-sync", description="Sign in and upload photos to fotolokashen."
    )
    parser.add_argument("--env-file", type=Path, help="Load KEY=VALUE settings first")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="Start the browser sign-in")
    login.add_argument("--no-browser", action="store_true", help="Only print the URL")
    login.set_defaults(handler=_cmd_login)

    callback = sub.add_parser("callback", help="Complete sign-in with the redirect URL")
    callback.add_argument("url")
    callback.set_defaults(handler=_cmd_callback)

    sub.add_parser("status", help="Show session and queue state").set_defaults(handler=_cmd_status)

    upload = sub.add_parser("upload", help="Upload one photo")
    upload.add_argument("image", help="Path to a JPEG/PNG/HEIF image")
    upload.add_argument("--location", required=True, type=int, help="Target location id")
    upload.add_argument("--lat", type=float)
    upload.add_argument("--lng", type=float)
    upload.add_argument("--alt", type=float)
    upload.add_argument("--accuracy", type=float)
    upload.add_argument("--caption")
    upload.set_defaults(handler=_cmd_upload)

    sub.add_parser("sync", help="Replay queued uploads").set_defaults(handler=_cmd_sync)
    sub.add_parser("queue", help="List queued uploads").set_defaults(handler=_cmd_queue)
    sub.add_parser("logout", help="Revoke and forget credentials").set_defaults(handler=_cmd_logout)
    sub.add_parser("config", help="Print the effective configuration").set_defaults(
        handler=_cmd_config
    )
    return parser


async def _run(config: ClientConfig, args: argparse.Namespace) -> Any:
    async with open_session(config) as ctx:
        return await args.handler(ctx, args)


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _load_env_file(args.env_file)

    try:
        config = ClientConfig.from_env()
    except ValueError as exc:
        _emit({"error": "invalid_config", "message": str(exc)}, stream=sys.stderr)
        return 1
    configure_logging(debug=args.debug or config.debug_logging)

    try:
        result = asyncio.run(_run(config, args))
    except FotolokashenError as exc:
        _emit(exc.to_payload(), stream=sys.stderr)
        return 1
    _emit(result)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())

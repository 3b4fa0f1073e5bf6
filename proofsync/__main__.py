"""
Command line entry point for ProofSync.

    python -m proofsync authorize
    python -m proofsync upload photo.jpg --destination "Beach Cleanup" --owner s123456
    python -m proofsync pending
    python -m proofsync retry --all
    python -m proofsync status
    python -m proofsync sign-out
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from .config import EnvironmentLoader
from .exceptions import ProofSyncError
from .main import ProofSyncApp, setup_logging
from .models import UploadState

logger = logging.getLogger(__name__)


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def cmd_authorize(app: ProofSyncApp, args: argparse.Namespace) -> int:
    await app.token_guard.authorize(app.identity)
    account = await app.token_guard.get_identity(app.identity)
    _print({"authorized": True, "account": account.to_dict()})
    return 0


async def cmd_upload(app: ProofSyncApp, args: argparse.Namespace) -> int:
    task = await app.pipeline.submit(args.path, args.destination, args.owner)
    result = task.to_dict()
    if task.fallback is not None:
        result["fallback"] = task.fallback.to_dict()
    _print(result)
    return 0 if task.state == UploadState.COMPLETED else 1


async def cmd_pending(app: ProofSyncApp, args: argparse.Namespace) -> int:
    if app.fallback_store is None:
        print("Fallback ledger is disabled (PROOFSYNC_FALLBACK_DB is empty)", file=sys.stderr)
        return 1
    records = await app.fallback_store.list_pending(owner_id=args.owner)
    _print([record.to_dict() for record in records])
    return 0


async def cmd_retry(app: ProofSyncApp, args: argparse.Namespace) -> int:
    if app.fallback_store is None:
        print("Fallback ledger is disabled (PROOFSYNC_FALLBACK_DB is empty)", file=sys.stderr)
        return 1

    if args.task_id:
        record = await app.fallback_store.get(args.task_id)
        if record is None:
            print(f"No pending upload {args.task_id}", file=sys.stderr)
            return 1
        records = [record]
    elif args.all:
        records = await app.fallback_store.list_pending(retryable_only=True)
    else:
        print("Give a task id or --all", file=sys.stderr)
        return 2

    failures = 0
    results = []
    for record in records:
        task = await app.pipeline.resubmit(record, force=args.force)
        if task.state != UploadState.COMPLETED:
            failures += 1
        results.append(task.to_dict())

    _print(results)
    return 0 if failures == 0 else 1


async def cmd_status(app: ProofSyncApp, args: argparse.Namespace) -> int:
    _print(await app.status())
    return 0


async def cmd_sign_out(app: ProofSyncApp, args: argparse.Namespace) -> int:
    revoked = await app.token_guard.sign_out(app.identity)
    _print({"signed_out": True, "revoked": revoked})
    return 0


COMMANDS = {
    "authorize": cmd_authorize,
    "upload": cmd_upload,
    "pending": cmd_pending,
    "retry": cmd_retry,
    "status": cmd_status,
    "sign-out": cmd_sign_out,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="proofsync",
        description="Upload volunteer-hour proof photos to Google Drive",
    )
    parser.add_argument("--env-file", help="Load settings from this .env file")
    parser.add_argument("--identity", help="Credential identity to act as")
    parser.add_argument(
        "--no-browser", action="store_true", help="Print the consent URL instead of opening it"
    )

    subparsers = parser.add_subparsers(dest="command", required=True, help="Available commands")

    subparsers.add_parser("authorize", help="Connect a Google account")

    upload_parser = subparsers.add_parser("upload", help="Upload a proof photo")
    upload_parser.add_argument("path", help="Photo path, file:// or data: URI")
    upload_parser.add_argument("--destination", required=True, help="What the photo is proof of")
    upload_parser.add_argument("--owner", required=True, help="Member id submitting the photo")

    pending_parser = subparsers.add_parser("pending", help="List uploads kept locally")
    pending_parser.add_argument("--owner", help="Only this member's uploads")

    retry_parser = subparsers.add_parser("retry", help="Retry uploads kept locally")
    retry_parser.add_argument("task_id", nargs="?", help="Task id to retry")
    retry_parser.add_argument("--all", action="store_true", help="Retry every retryable upload")
    retry_parser.add_argument(
        "--force", action="store_true", help="Also retry an upload that failed for a non-retryable reason"
    )

    subparsers.add_parser("status", help="Show storage and authorization status")
    subparsers.add_parser("sign-out", help="Revoke and forget the stored credential")

    return parser


async def run(args: argparse.Namespace) -> int:
    config = EnvironmentLoader.load_config(args.env_file)
    if args.identity:
        config.identity = args.identity
    setup_logging(config)

    app = ProofSyncApp(config, open_browser=not args.no_browser)
    try:
        await app.initialize()
        return await COMMANDS[args.command](app, args)
    except ProofSyncError as e:
        logger.error(f"{args.command} failed: {e.message}")
        _print({"error": e.to_dict()})
        return 1
    finally:
        await app.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())

"""Command-line interface for mail-sync.

This module provides the main entry point for the CLI application.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

import structlog

from mail_sync import __version__
from mail_sync.config import get_settings
from mail_sync.exceptions import AuthExpiredError, MailSyncError
from mail_sync.gmail.client import GmailClient
from mail_sync.models import OutgoingAttachment
from mail_sync.service import MailService
from mail_sync.utils import configure_logging

logger = structlog.get_logger()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mail-sync", description="Gmail sync and MIME engine")
    parser.add_argument(
        "--user",
        default="local",
        help="User ID that scopes stored mail and sync state (default: local)",
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Path to the SQLite store (default: settings store_db_path)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("sync", help="Ingest new inbox and sent mail")

    subparsers.add_parser("watch", help="Register Gmail push notifications")

    read_parser = subparsers.add_parser("mark-read", help="Mark a message as read")
    read_parser.add_argument("message_id", help="Gmail message ID")

    thread_parser = subparsers.add_parser("thread", help="Print a decoded thread")
    thread_parser.add_argument("thread_id", help="Gmail thread ID")

    reply_parser = subparsers.add_parser("reply", help="Reply inside an existing thread")
    reply_parser.add_argument("thread_id", help="Gmail thread ID")
    _add_compose_arguments(reply_parser)

    send_parser = subparsers.add_parser("send", help="Start a new thread")
    send_parser.add_argument("--subject", default=None, help="Subject line")
    _add_compose_arguments(send_parser)

    push_parser = subparsers.add_parser(
        "push",
        help="Handle a Pub/Sub push envelope (JSON file, or - for stdin)",
    )
    push_parser.add_argument("envelope", help="Path to the envelope JSON")

    return parser


def _add_compose_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--to", action="append", required=True, help="Recipient (repeatable)")
    parser.add_argument("--html", required=True, help="HTML body, or @path to read it from a file")
    parser.add_argument(
        "--attach",
        action="append",
        default=[],
        metavar="URL,FILENAME,MIME_TYPE",
        help="Attachment reference (repeatable)",
    )


def _read_html(value: str) -> str:
    if value.startswith("@"):
        return Path(value[1:]).read_text(encoding="utf-8")
    return value


def _parse_attachments(values: list[str]) -> list[OutgoingAttachment]:
    attachments = []
    for value in values:
        url, _, rest = value.partition(",")
        filename, _, mime_type = rest.partition(",")
        attachments.append(
            OutgoingAttachment(url=url or None, filename=filename or None, mime_type=mime_type or None)
        )
    return attachments


async def _build_service(args: argparse.Namespace) -> MailService:
    settings = get_settings()
    if args.db is not None:
        settings = settings.model_copy(update={"store_db_path": args.db})

    gmail = GmailClient(settings)
    await gmail.authenticate()
    return MailService.from_settings(gmail, settings)


async def _run(args: argparse.Namespace) -> int:
    service = await _build_service(args)
    user_id: str = args.user

    if args.command == "sync":
        report = await service.sync_emails(user_id)
        print(
            f"{report.state.value}: examined {report.examined}, ingested {report.ingested}, "
            f"skipped {report.skipped}, failed {report.failed}, "
            f"attachments {report.attachments_indexed} indexed / {report.attachments_failed} failed"
            + (" (capped, will resume)" if report.capped else "")
        )
        return 0

    if args.command == "watch":
        registration = await service.watch_mailbox(user_id)
        print(f"Watching {registration.topic} until {registration.expiration.isoformat()}")
        return 0

    if args.command == "mark-read":
        await service.mark_as_read(user_id, args.message_id)
        print(f"Marked {args.message_id} as read")
        return 0

    if args.command == "thread":
        thread = await service.get_thread(user_id, args.thread_id)
        if thread is None:
            print(f"Thread {args.thread_id} not found")
            return 1
        for m in thread.messages:
            print(f"{m.received_at.isoformat()}\t{m.sender}\t{m.subject or ''}")
            print(m.content.strip())
            print()
        return 0

    if args.command in ("reply", "send"):
        html = _read_html(args.html)
        attachments = _parse_attachments(args.attach)
        if args.command == "reply":
            result = await service.send_reply(user_id, args.thread_id, args.to, html, attachments)
        else:
            result = await service.send_new(user_id, args.to, args.subject, html, attachments)
        print(f"Sent {result.message_id} in thread {result.thread_id}")
        for name in result.failed_attachments:
            print(f"  failed attachment: {name}")
        for name in result.dropped_attachments:
            print(f"  dropped attachment: {name}")
        return 0

    if args.command == "push":
        raw = sys.stdin.read() if args.envelope == "-" else Path(args.envelope).read_text(encoding="utf-8")
        report = await service.handle_push_notification(json.loads(raw))
        print("ignored" if report is None else report.state.value)
        return 0

    logger.error("unknown_command", command=args.command)
    return 2


def main(args: list[str] | None = None) -> int:
    """Main entry point for the mail-sync CLI.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    if args is None:
        args = sys.argv[1:]

    settings = get_settings()
    configure_logging(level=settings.log_level, json=settings.log_json)

    logger.info("mail_sync_started", version=__version__, debug=settings.debug)

    parser = _build_parser()
    parsed = parser.parse_args(args)

    try:
        return asyncio.run(_run(parsed))
    except AuthExpiredError as exc:
        logger.error("authentication_required", error=str(exc), code=exc.code)
        print("Gmail authorization expired; delete the token file and run again.", file=sys.stderr)
        return 3
    except MailSyncError as exc:
        logger.error("command_failed", command=parsed.command, error=str(exc), code=exc.code)
        print(f"Error [{exc.code}]: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

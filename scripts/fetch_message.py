# scripts/fetch_message.py
"""Utilities to list, download and decode Gmail API messages."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
import sys

from mail_codec.config import settings
from mail_codec.inline_images import InlineImageResolver
from mail_codec.parser import decode_message
from mail_codec.tool import (
    GmailAttachmentFetcher,
    build_gmail_service,
    fetch_message_json,
    list_message_ids,
    summarize_decoded_email,
)

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fetch Gmail messages via the Gmail API.")
    parser.add_argument(
        "--message-id",
        help="Explicit message ID to download. If omitted, downloads the newest message.",
    )
    parser.add_argument(
        "--output",
        "-o",
        default="message.json",
        help="Where to store the downloaded message (use '-' for stdout; default: %(default)s).",
    )
    parser.add_argument(
        "--labels",
        nargs="*",
        default=None,
        help="Optional list of label IDs to filter when picking the newest message.",
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="List recent message IDs instead of downloading (honors --max-results/--labels).",
    )
    parser.add_argument(
        "--max-results",
        type=int,
        default=5,
        help="How many IDs to list when using --list (default: %(default)s).",
    )
    parser.add_argument(
        "--decode",
        action="store_true",
        help="Decode the message and write its summary and HTML body instead of the raw JSON.",
    )
    parser.add_argument(
        "--resolve-images",
        action="store_true",
        help="With --decode, inline cid: images into the body as data: URIs.",
    )
    return parser


def _build_service():
    return build_gmail_service(
        token_path=settings.GMAIL_TOKEN_PATH,
        client_secret_path=settings.GMAIL_CLIENT_SECRET_PATH,
    )


def _decode(message: dict, resolve_images: bool) -> dict:
    email = decode_message(message)
    if resolve_images and email.inline_images:
        logger.info("Resolving %d inline image(s) for message %s", len(email.inline_images), email.id)
        fetcher = GmailAttachmentFetcher(_build_service, user_id=settings.GMAIL_USER_ID)
        resolver = InlineImageResolver(fetcher, batch_size=settings.INLINE_IMAGE_BATCH_SIZE)
        email = asyncio.run(resolver.resolve(email))
    out = summarize_decoded_email(email)
    out["html"] = email.body
    return out


def main(argv: list[str] | None = None) -> int:
    argp = build_parser()
    args = argp.parse_args(argv)
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    gmail = _build_service()

    if args.list:
        ids = list_message_ids(
            gmail, user_id=settings.GMAIL_USER_ID, max_results=args.max_results, label_ids=args.labels
        )
        if not ids:
            print("No messages returned.")
            return 0
        print("Recent message IDs:")
        for mid in ids:
            print(f"  {mid}")
        return 0

    message_id = args.message_id
    if not message_id:
        ids = list_message_ids(gmail, user_id=settings.GMAIL_USER_ID, max_results=1, label_ids=args.labels)
        if not ids:
            raise SystemExit("No messages found to download. Try adjusting labels or mailbox contents.")
        message_id = ids[0]
        print(f"No --message-id provided; using newest message {message_id}.")

    message = fetch_message_json(gmail, message_id, user_id=settings.GMAIL_USER_ID)
    if args.decode:
        message = _decode(message, args.resolve_images)

    if args.output == "-":
        json.dump(message, sys.stdout)
        sys.stdout.flush()
        return 0

    Path(args.output).write_text(json.dumps(message, indent=2))
    print(f"Saved message to {args.output}")
    if not args.decode:
        print(f"Run `python main.py {args.output}` to inspect it.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

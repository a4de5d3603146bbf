# scripts/send_message.py
"""Compose a message from the command line and send it, or store it as a Gmail draft."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from mail_codec.config import settings
from mail_codec.errors import MailCodecError
from mail_codec.tool import build_gmail_service, save_draft, send_draft
from mail_codec.types import ComposedDraft, DraftAttachment


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Send a message or save a draft via the Gmail API.")
    parser.add_argument("--to", required=True, help="Comma-separated recipients.")
    parser.add_argument("--cc", default="", help="Comma-separated Cc recipients.")
    parser.add_argument("--bcc", default="", help="Comma-separated Bcc recipients.")
    parser.add_argument("--subject", default="", help="Message subject.")
    body = parser.add_mutually_exclusive_group(required=True)
    body.add_argument("--html-file", help="HTML body; <img src=\"data:...\"> images are sent inline.")
    body.add_argument("--html", help="HTML body given inline on the command line.")
    parser.add_argument(
        "--attach",
        nargs="*",
        default=[],
        help="Files to attach.",
    )
    parser.add_argument("--thread-id", help="Gmail thread to reply into.")
    parser.add_argument("--in-reply-to", help="Message-ID of the message being answered.")
    parser.add_argument(
        "--draft",
        action="store_true",
        help="Save as a draft instead of sending.",
    )
    parser.add_argument("--draft-id", help="With --draft, overwrite this existing draft.")
    return parser


def compose(args: argparse.Namespace) -> ComposedDraft:
    html = Path(args.html_file).read_text(encoding="utf-8") if args.html_file else args.html
    return ComposedDraft(
        to=args.to,
        cc=args.cc,
        bcc=args.bcc,
        subject=args.subject,
        body_html=html,
        attachments=[DraftAttachment.from_path(p) for p in args.attach],
        thread_id=args.thread_id,
        in_reply_to=args.in_reply_to,
    )


def main(argv: list[str] | None = None) -> int:
    argp = build_parser()
    args = argp.parse_args(argv)
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        draft = compose(args)
    except MailCodecError as e:
        raise SystemExit(f"Cannot compose message: {e}")

    gmail = build_gmail_service(
        token_path=settings.GMAIL_TOKEN_PATH,
        client_secret_path=settings.GMAIL_CLIENT_SECRET_PATH,
    )
    try:
        if args.draft:
            resp = save_draft(
                gmail, draft, args.draft_id,
                user_id=settings.GMAIL_USER_ID, domain=settings.CONTENT_ID_DOMAIN,
            )
            print(f"Saved draft {resp.get('id')}")
        else:
            resp = send_draft(gmail, draft, user_id=settings.GMAIL_USER_ID, domain=settings.CONTENT_ID_DOMAIN)
            print(f"Sent message {resp.get('id')}")
    except MailCodecError as e:
        raise SystemExit(f"Cannot encode message: {e}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

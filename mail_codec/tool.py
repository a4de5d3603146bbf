"""Gmail API transport: authentication, fetching, attachment download, send and draft."""

from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .decoder import b64url_decode
from .encoder import CONTENT_ID_DOMAIN, raw_message_body
from .errors import AttachmentFetchError
from .parser import decode_message, make_preview
from .types import ComposedDraft, DecodedEmail

logger = logging.getLogger(__name__)

SCOPES: Sequence[str] = ("https://www.googleapis.com/auth/gmail.modify",)


def summarize_decoded_email(email: DecodedEmail) -> Dict[str, Any]:
    """
    Reduce a DecodedEmail down to the fields most agent tools usually need.
    """
    return {
        "id": email.id,
        "thread_id": email.thread_id,
        "subject": email.subject,
        "from": email.sender.email,
        "from_name": email.sender.name,
        "to": [a.email for a in email.to],
        "cc": [a.email for a in email.cc],
        "date": email.date.isoformat(),
        "preview": email.preview,
        "body": make_preview(email.body, length=len(email.body)),
        "attachments": [a.name for a in email.attachments],
        "inline_images": len(email.inline_images),
        "is_read": email.is_read,
    }


def summarize_message_json(msg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Decode a Gmail API message dict and return a minimal summary.
    """
    return summarize_decoded_email(decode_message(msg))


def _ensure_google_imports():
    from google.auth.transport.requests import Request
    from google.oauth2.credentials import Credentials
    from google_auth_oauthlib.flow import InstalledAppFlow
    from googleapiclient.discovery import build

    return Request, Credentials, InstalledAppFlow, build


def build_gmail_service(
    *,
    token_path: str | Path = "token.json",
    client_secret_path: str | Path = "client_secret.json",
    scopes: Sequence[str] = SCOPES,
    cache_discovery: bool = False,
):
    """
    Create an authenticated Gmail API client, prompting the user if needed.
    """
    Request, Credentials, InstalledAppFlow, build = _ensure_google_imports()

    token_path = Path(token_path)
    client_secret_path = Path(client_secret_path)

    creds: Optional[Credentials] = None
    if token_path.exists():
        creds = Credentials.from_authorized_user_file(str(token_path), scopes)
    if not creds or not creds.valid:
        if creds and creds.expired and creds.refresh_token:
            logger.info("Refreshing expired Gmail credentials")
            creds.refresh(Request())
        else:
            if not client_secret_path.exists():
                raise FileNotFoundError(
                    f"client_secret file not found at {client_secret_path}. "
                    "Download it from Google Cloud Console."
                )
            flow = InstalledAppFlow.from_client_secrets_file(str(client_secret_path), scopes)
            creds = flow.run_local_server(port=0)
        token_path.write_text(creds.to_json())

    return build("gmail", "v1", credentials=creds, cache_discovery=cache_discovery)


def list_message_ids(
    gmail_service,
    *,
    user_id: str = "me",
    max_results: int = 5,
    label_ids: Iterable[str] | None = None,
) -> List[str]:
    """
    Return the most recent Gmail message IDs, optionally filtered by label.
    """
    resp = (
        gmail_service.users()
        .messages()
        .list(userId=user_id, maxResults=max_results, labelIds=list(label_ids or []))
        .execute()
    )
    return [m["id"] for m in resp.get("messages", [])]


def fetch_message_json(
    gmail_service,
    message_id: str,
    *,
    user_id: str = "me",
    format: str = "full",
) -> Dict[str, Any]:
    """
    Download a single Gmail message as a JSON dict.
    """
    return (
        gmail_service.users()
        .messages()
        .get(userId=user_id, id=message_id, format=format)
        .execute()
    )


def fetch_attachment_bytes(gmail_service, user_id: str, message_id: str, attachment_id: str) -> bytes:
    """
    Download attachment bytes when a part only contains body.attachmentId.
    Usage:
      data = fetch_attachment_bytes(gmail, "me", email.id, att.attachment_id)
    """
    resp = gmail_service.users().messages().attachments().get(
        userId=user_id, messageId=message_id, id=attachment_id
    ).execute()
    return b64url_decode(resp.get("data", ""))


class GmailAttachmentFetcher:
    """
    Async attachment fetcher backed by the Gmail API.

    googleapiclient services are not thread-safe, so every worker thread
    builds its own through `service_factory`.
    """

    def __init__(self, service_factory: Callable[[], Any], *, user_id: str = "me") -> None:
        self.service_factory = service_factory
        self.user_id = user_id
        self._local = threading.local()

    def _service(self):
        service = getattr(self._local, "service", None)
        if service is None:
            service = self._local.service = self.service_factory()
        return service

    def _get(self, message_id: str, attachment_id: str) -> Dict[str, Any]:
        return (
            self._service()
            .users()
            .messages()
            .attachments()
            .get(userId=self.user_id, messageId=message_id, id=attachment_id)
            .execute()
        )

    async def fetch_attachment(self, message_id: str, attachment_id: str) -> Dict[str, Any]:
        resp = await asyncio.to_thread(self._get, message_id, attachment_id)
        if not resp or not resp.get("data"):
            raise AttachmentFetchError(
                f"No data for attachment {attachment_id} of message {message_id}"
            )
        return resp


def send_draft(
    gmail_service,
    draft: ComposedDraft,
    *,
    user_id: str = "me",
    domain: str = CONTENT_ID_DOMAIN,
) -> Dict[str, Any]:
    """Encode `draft` and send it; returns the sent message resource."""
    body = raw_message_body(draft, domain)
    resp = gmail_service.users().messages().send(userId=user_id, body=body).execute()
    logger.info("Sent message %s (thread %s)", resp.get("id"), resp.get("threadId"))
    return resp


def save_draft(
    gmail_service,
    draft: ComposedDraft,
    draft_id: str | None = None,
    *,
    user_id: str = "me",
    domain: str = CONTENT_ID_DOMAIN,
) -> Dict[str, Any]:
    """
    Encode `draft` and store it as a Gmail draft.
    A new draft is created unless `draft_id` names one to overwrite.
    """
    body: Dict[str, Any] = {"message": raw_message_body(draft, domain)}
    drafts = gmail_service.users().drafts()
    if draft_id:
        body["id"] = draft_id
        resp = drafts.update(userId=user_id, id=draft_id, body=body).execute()
    else:
        resp = drafts.create(userId=user_id, body=body).execute()
    logger.info("Saved draft %s", resp.get("id"))
    return resp


def read_message_summary(
    message_id: str,
    *,
    gmail_service=None,
    user_id: str = "me",
    token_path: str | Path = "token.json",
    client_secret_path: str | Path = "client_secret.json",
) -> Dict[str, Any]:
    """
    High-level helper suitable for agent tools: fetch, decode, and summarize a message.
    Provide an authenticated gmail_service to reuse connections, or let this helper
    build one from the OAuth credentials on disk.
    """
    if gmail_service is None:
        gmail_service = build_gmail_service(
            token_path=token_path, client_secret_path=client_secret_path
        )
    msg = fetch_message_json(gmail_service, message_id, user_id=user_id)
    return summarize_message_json(msg)


__all__ = [
    "SCOPES",
    "GmailAttachmentFetcher",
    "build_gmail_service",
    "fetch_attachment_bytes",
    "fetch_message_json",
    "list_message_ids",
    "read_message_summary",
    "save_draft",
    "send_draft",
    "summarize_decoded_email",
    "summarize_message_json",
]

from __future__ import annotations
import html
import logging
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional, Tuple
from .types import AttachmentInfo, DecodedEmail, InlineImage, MimePart
from .decoder import (
    b64url_decode,
    charset_from_content_type,
    decode_bytes,
    decode_header_str,
    decode_html_entities,
    decode_quoted_printable,
    parse_addr_list,
    split_from_header,
)
from .inline_images import detect_inline_images

logger = logging.getLogger(__name__)

DECODE_ERROR_PLACEHOLDER = "[Error decoding email content]"
PREVIEW_LENGTH = 200
OCTET_STREAM = "application/octet-stream"

EXTENSION_MIME_TYPES: Dict[str, str] = {
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/msword",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.ms-excel",
    "ppt": "application/vnd.ms-powerpoint",
    "pptx": "application/vnd.ms-powerpoint",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "zip": "application/zip",
}

_TAG_RE = re.compile(r"<[^>]*>")
_SPACES_RE = re.compile(r"\s+")
_NEWLINE_RE = re.compile(r"\r\n|\n|\r")

# ------------------ Public API ------------------

def decode_message(msg: Dict[str, Any]) -> DecodedEmail:
    """
    Decode a Gmail API message dict returned by:
      gmail.users().messages().get(userId="me", id=..., format="full")
    Never raises for malformed content: broken parts degrade to a placeholder.
    Inline `cid:` images are left unresolved; see inline_images.process_inline_images.
    """
    payload = MimePart.from_dict(msg.get("payload"))

    subject = decode_header_str(payload.header("subject"))
    sender  = split_from_header(decode_header_str(payload.header("from")))
    to      = parse_addr_list(decode_header_str(payload.header("to")))
    cc      = parse_addr_list(decode_header_str(payload.header("cc")))
    date    = _parse_date(payload.header("date"), msg.get("internalDate"))

    snippet = decode_html_entities(msg.get("snippet"))

    body = ""
    part = find_body_part(payload)
    if part is not None:
        body = extract_text_from_part(part)
    elif snippet:
        logger.warning("No body part found for message %s, using snippet", msg.get("id"))
        body = plain_text_to_html(snippet)

    inline_images = detect_inline_images(payload)
    referenced = {img.attachment_id for img in inline_images if _is_referenced(body, img)}
    attachments = [
        a for a in find_attachments_recursive(payload) if a.attachment_id not in referenced
    ]

    return DecodedEmail(
        id=msg.get("id", ""),
        thread_id=msg.get("threadId", ""),
        sender=sender,
        to=to,
        cc=cc,
        subject=subject,
        date=date,
        body=body,
        preview=snippet or make_preview(body),
        attachments=attachments,
        inline_images=inline_images,
        label_ids=list(msg.get("labelIds") or []),
    )

def decode_thread(thread: Dict[str, Any]) -> List[DecodedEmail]:
    """
    Decode every message of a thread resource (users.threads.get, format="full").
    A message that cannot be decoded is logged and skipped.
    """
    out: List[DecodedEmail] = []
    for i, msg in enumerate(thread.get("messages") or []):
        try:
            out.append(decode_message(msg))
        except Exception:
            logger.exception("Failed to decode message #%d in thread %s", i, thread.get("id"))
    return out

# ------------------ body selection ------------------

def find_body_part(payload: MimePart) -> Optional[MimePart]:
    """
    Depth-first search for the best renderable body.
    The first text/html leaf with data wins; otherwise the first text/plain candidate.
    """
    html_part, text_part = _search_body(payload, 0, None)
    return html_part or text_part

def _search_body(
    part: MimePart, depth: int, text_part: Optional[MimePart]
) -> Tuple[Optional[MimePart], Optional[MimePart]]:
    """Return (html part, text candidate); stops at the first html part."""
    if part.mime_type == "text/html" and part.has_data:
        return part, text_part
    if part.mime_type == "text/plain" and part.has_data and text_part is None:
        text_part = part

    if not part.parts:
        return None, text_part

    if part.mime_type == "multipart/alternative":
        for child in part.parts:
            if child.mime_type == "text/html" and child.has_data:
                return child, text_part
        for child in part.parts:
            if child.mime_type == "text/plain" and child.has_data and text_part is None:
                text_part = child

    for child in part.parts:
        # below the root, attachment leaves are never body candidates
        if depth > 0 and (
            child.filename
            or not (child.mime_type.startswith("text/") or child.is_multipart)
        ):
            continue
        html_part, text_part = _search_body(child, depth + 1, text_part)
        if html_part is not None:
            return html_part, text_part
    return None, text_part

# ------------------ text extraction ------------------

def extract_text_from_part(part: MimePart) -> str:
    """
    base64url -> (quoted-printable) -> charset -> HTML entities.
    text/plain comes back as HTML with <br> line breaks.
    """
    if not part.has_data:
        return ""
    try:
        raw = b64url_decode(part.body_data)
        if not raw:
            logger.warning("Part %s (%s) has undecodable body data", part.part_id, part.mime_type)
            return DECODE_ERROR_PLACEHOLDER

        cte = part.header("content-transfer-encoding").strip().lower()
        # text/html is QP-decoded whatever its declared CTE says
        if part.mime_type == "text/html" or "quoted-printable" in cte:
            raw = decode_quoted_printable(raw)

        charset = charset_from_content_type(part.header("content-type"))
        text = decode_html_entities(decode_bytes(raw, charset))

        if part.mime_type == "text/plain":
            return plain_text_to_html(text)
        return text
    except Exception:
        logger.exception("Error extracting text from part %s (%s)", part.part_id, part.mime_type)
        return DECODE_ERROR_PLACEHOLDER

def plain_text_to_html(text: str) -> str:
    return _NEWLINE_RE.sub("<br>", html.escape(text, quote=False))

def make_preview(body_html: str, length: int = PREVIEW_LENGTH) -> str:
    text = decode_html_entities(_TAG_RE.sub(" ", body_html.replace("<br>", " ")))
    return _SPACES_RE.sub(" ", text).strip()[:length]

# ------------------ attachments ------------------

def find_attachments_recursive(payload: MimePart) -> List[AttachmentInfo]:
    """
    Collect every part with a filename and an attachmentId, body parts included.
    Not de-duplicated.
    """
    out: List[AttachmentInfo] = []
    for part in payload.walk():
        if not (part.filename and part.attachment_id):
            continue
        out.append(AttachmentInfo(
            name=decode_header_str(part.filename),
            mime_type=infer_mime_type(part.mime_type, part.filename),
            size=part.size,
            attachment_id=part.attachment_id,
            part_id=part.part_id,
        ))
    return out

def infer_mime_type(mime_type: str, filename: str) -> str:
    """Refine the generic octet-stream type from the filename extension."""
    mime_type = mime_type or OCTET_STREAM
    if mime_type != OCTET_STREAM or "." not in filename:
        return mime_type
    ext = filename.rsplit(".", 1)[1].lower()
    return EXTENSION_MIME_TYPES.get(ext, mime_type)

# ------------------ utilities ------------------

def _is_referenced(body: str, img: InlineImage) -> bool:
    return bool(img.content_id) and f"cid:{img.content_id}".lower() in body.lower()

def _parse_date(date_hdr: str, internal_date: Any) -> datetime:
    """
    Date header first, then the provider's internalDate (epoch ms), then now.
    """
    if date_hdr:
        try:
            dt = parsedate_to_datetime(date_hdr)
            return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
        except (TypeError, ValueError, IndexError):
            logger.warning("Unparseable Date header %r", date_hdr)
    if internal_date:
        try:
            return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            logger.warning("Unparseable internalDate %r", internal_date)
    return datetime.now(timezone.utc)

"""
Serialize a ComposedDraft into the provider's raw message format.

The message is built as a list of lines, one boundary per multipart level:

    mixed          (only with ordinary attachments)
      related      (only with inline images)
        alternative
          text/plain
          text/html
        image parts...
      attachment parts...

and returned as unpadded base64url, ready for `messages.send` or `drafts.create`.
"""

from __future__ import annotations

import base64
import binascii
import itertools
import logging
import re
import secrets
import time
from email.header import Header
from email.utils import formataddr, getaddresses
from html import unescape
from typing import List, Tuple

from .decoder import b64url_encode
from .errors import AttachmentEncodeError, MimeStructureError
from .types import ComposedDraft, DraftAttachment

logger = logging.getLogger(__name__)

CONTENT_ID_DOMAIN = "gmail.com"
LINE_LENGTH = 76
CRLF = "\r\n"

_DATA_URI_IMG_RE = re.compile(
    r"""<img\b[^>]*?(?<![\w-])(src\s*=\s*(["'])data:([^;,"']+);base64,([^"']+)\2)[^>]*>""", re.I
)
_ALT_ATTR_RE = re.compile(r"""(?<![\w-])alt\s*=\s*(["'])(.*?)\1""", re.I)
_TAG_RE = re.compile(r"<[^>]*>")
_UNSAFE_NAME_RE = re.compile(r"""[\\/"\r\n]""")

_cid_counter = itertools.count(1)


# ------------------ identifiers ------------------

def generate_content_id(domain: str = CONTENT_ID_DOMAIN) -> str:
    return f"inline-image-{next(_cid_counter)}-{int(time.time() * 1000)}@{domain}"


def generate_boundary() -> str:
    return f"{'0' * 12}{secrets.token_hex(6)}{int(time.time() * 1000):x}"


# ------------------ inline images ------------------

def extract_inline_images(
    html: str, domain: str = CONTENT_ID_DOMAIN
) -> Tuple[str, List[DraftAttachment]]:
    """
    Rewrite every `<img src="data:...;base64,...">` to `src="cid:<id>"`.
    Returns the rewritten HTML and one inline DraftAttachment per image.
    """
    images: List[DraftAttachment] = []

    def _rewrite(m: re.Match[str]) -> str:
        tag, mime_type, data = m.group(0), m.group(3).strip().lower(), m.group(4)
        cid = generate_content_id(domain)
        alt = _ALT_ATTR_RE.search(tag)
        stem = _UNSAFE_NAME_RE.sub("_", alt.group(2).strip()) if alt and alt.group(2).strip() else ""
        stem = stem or f"inline-image-{len(images) + 1}"
        ext = mime_type.split("/")[-1].split("+")[0] or "png"
        images.append(DraftAttachment(
            name=f"{stem}.{ext}", mime_type=mime_type, data=re.sub(r"\s+", "", data), cid=cid
        ))
        start, end = m.start(1) - m.start(0), m.end(1) - m.start(0)
        return f'{tag[:start]}src="cid:{cid}"{tag[end:]}'

    rewritten = _DATA_URI_IMG_RE.sub(_rewrite, html)
    if images:
        logger.debug("Extracted %d inline image(s) from draft body", len(images))
    return rewritten, images


def html_to_plain_text(html: str) -> str:
    return unescape(_TAG_RE.sub("", html).replace("&nbsp;", " ")).strip()


# ------------------ payload encoding ------------------

def _base64_lines(data: bytes) -> List[str]:
    encoded = base64.b64encode(data).decode("ascii")
    return [encoded[i:i + LINE_LENGTH] for i in range(0, len(encoded), LINE_LENGTH)]


def _attachment_bytes(att: DraftAttachment) -> bytes:
    if isinstance(att.data, (bytes, bytearray)):
        return bytes(att.data)
    cleaned = re.sub(r"\s+", "", att.data or "").rstrip("=")
    cleaned += "=" * ((-len(cleaned)) % 4)
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AttachmentEncodeError(f"Attachment {att.name!r} is not valid base64: {e}") from e


def _header_value(value: str, maxlinelen: int = LINE_LENGTH) -> str:
    """Strip CR/LF and RFC 2047-encode non-ASCII text."""
    value = re.sub(r"[\r\n]+", " ", value or "").strip()
    try:
        value.encode("ascii")
        return value
    except UnicodeEncodeError:
        return Header(value, "utf-8", maxlinelen=maxlinelen).encode(linesep=CRLF)


def _address_value(value: str) -> str:
    """Re-emit an address list with only the display names RFC 2047-encoded."""
    value = re.sub(r"[\r\n]+", " ", value or "")
    pairs = [(name.strip(), addr.strip()) for name, addr in getaddresses([value]) if addr.strip()]
    return ", ".join(formataddr(pair, charset="utf-8") for pair in pairs)


def _param_value(value: str) -> str:
    # parameters are never folded
    value = _header_value(value, maxlinelen=0)
    return value.replace("\\", "\\\\").replace('"', '\\"')


# ------------------ entities ------------------

def _leaf(headers: List[str], payload: bytes) -> List[str]:
    return headers + ["Content-Transfer-Encoding: base64", ""] + _base64_lines(payload)


def _multipart(subtype: str, children: List[List[str]]) -> List[str]:
    boundary = generate_boundary()
    lines = [f'Content-Type: multipart/{subtype}; boundary="{boundary}"', ""]
    for child in children:
        lines.append(f"--{boundary}")
        lines.extend(child)
    lines.append(f"--{boundary}--")
    return lines


def _text_part(subtype: str, text: str) -> List[str]:
    return _leaf([f"Content-Type: text/{subtype}; charset=UTF-8"], text.encode("utf-8"))


def _inline_part(image: DraftAttachment) -> List[str]:
    name = _param_value(image.name)
    return _leaf([
        f'Content-Type: {image.mime_type}; name="{name}"',
        f'Content-Disposition: inline; filename="{name}"',
        f"Content-ID: <{image.cid}>",
        f"X-Attachment-Id: {image.cid}",
    ], _attachment_bytes(image))


def _attachment_part(att: DraftAttachment) -> List[str]:
    name = _param_value(att.name)
    return _leaf([
        f'Content-Type: {att.mime_type or "application/octet-stream"}; name="{name}"',
        f'Content-Disposition: attachment; filename="{name}"',
    ], _attachment_bytes(att))


def _envelope(draft: ComposedDraft) -> List[str]:
    lines = ["MIME-Version: 1.0", f"To: {_address_value(draft.to)}"]
    if draft.cc:
        lines.append(f"Cc: {_address_value(draft.cc)}")
    if draft.bcc:
        lines.append(f"Bcc: {_address_value(draft.bcc)}")
    lines.append(f"Subject: {_header_value(draft.subject)}")
    if draft.in_reply_to:
        lines.append(f"In-Reply-To: {_header_value(draft.in_reply_to)}")
        lines.append(f"References: {_header_value(draft.in_reply_to)}")
    return lines


def _check_references(html: str, extracted: List[DraftAttachment]) -> None:
    for image in extracted:
        if f"cid:{image.cid}" not in html:
            logger.error(
                "Inline image %s (%s) has no cid reference in the rewritten body (%d chars)",
                image.cid, image.name, len(html),
            )
            raise MimeStructureError(f"Inline image {image.cid} is not referenced by the HTML body")


# ------------------ public API ------------------

def build_mime_lines(draft: ComposedDraft, domain: str = CONTENT_ID_DOMAIN) -> List[str]:
    """
    Build the full message as a list of lines (headers, then nested multipart body).
    Raises AttachmentEncodeError or MimeStructureError; nothing partial is returned.
    """
    html, extracted = extract_inline_images(draft.body_html or "", domain)
    _check_references(html, extracted)

    inline = extracted + [a for a in draft.attachments if a.cid]
    regular = [a for a in draft.attachments if not a.cid]

    body = _multipart("alternative", [
        _text_part("plain", html_to_plain_text(html)),
        _text_part("html", html),
    ])
    if inline:
        body = _multipart("related", [body] + [_inline_part(img) for img in inline])
    if regular:
        body = _multipart("mixed", [body] + [_attachment_part(att) for att in regular])

    logger.info(
        "Built message: %d inline image(s), %d attachment(s)", len(inline), len(regular)
    )
    return _envelope(draft) + body


def encode_draft(draft: ComposedDraft, domain: str = CONTENT_ID_DOMAIN) -> str:
    """CRLF-join the message, UTF-8 encode it and return unpadded base64url."""
    raw = CRLF.join(build_mime_lines(draft, domain))
    return b64url_encode(raw.encode("utf-8"))


def raw_message_body(draft: ComposedDraft, domain: str = CONTENT_ID_DOMAIN) -> dict:
    """The `message` resource shared by send and draft requests."""
    body = {"raw": encode_draft(draft, domain)}
    if draft.thread_id:
        body["threadId"] = draft.thread_id
    return body


__all__ = [
    "CONTENT_ID_DOMAIN",
    "build_mime_lines",
    "encode_draft",
    "extract_inline_images",
    "generate_boundary",
    "generate_content_id",
    "html_to_plain_text",
    "raw_message_body",
]

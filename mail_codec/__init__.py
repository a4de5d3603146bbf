"""Decode Gmail API messages into display-ready email, and encode drafts back into raw MIME."""

from .encoder import build_mime_lines, encode_draft, extract_inline_images, raw_message_body
from .errors import AttachmentEncodeError, AttachmentFetchError, MailCodecError, MimeStructureError
from .inline_images import InlineImageResolver, detect_inline_images, process_inline_images
from .parser import decode_message, decode_thread, find_attachments_recursive, find_body_part
from .tool import GmailAttachmentFetcher, fetch_attachment_bytes, save_draft, send_draft
from .types import (
    Address,
    AttachmentInfo,
    ComposedDraft,
    DecodedEmail,
    DraftAttachment,
    InlineImage,
    MimePart,
)

__all__ = [
    "Address",
    "AttachmentEncodeError",
    "AttachmentFetchError",
    "AttachmentInfo",
    "ComposedDraft",
    "DecodedEmail",
    "DraftAttachment",
    "GmailAttachmentFetcher",
    "InlineImage",
    "InlineImageResolver",
    "MailCodecError",
    "MimePart",
    "MimeStructureError",
    "build_mime_lines",
    "decode_message",
    "decode_thread",
    "detect_inline_images",
    "encode_draft",
    "extract_inline_images",
    "fetch_attachment_bytes",
    "find_attachments_recursive",
    "find_body_part",
    "process_inline_images",
    "raw_message_body",
    "save_draft",
    "send_draft",
]

from __future__ import annotations
import base64
import mimetypes
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .errors import AttachmentEncodeError


@dataclass(frozen=True)
class MimePart:
    """
    One node of the provider's MIME tree (`payload` and its nested `parts`).
    - Leaves carry `body_data` (base64url) or an `attachment_id` to fetch separately.
    - Containers (multipart/*) carry `parts` only.
    """
    mime_type: str = ""
    filename: str = ""
    headers: Tuple[Tuple[str, str], ...] = ()
    body_data: Optional[str] = None
    attachment_id: Optional[str] = None
    size: int = 0
    part_id: Optional[str] = None
    parts: Tuple["MimePart", ...] = ()

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "MimePart":
        d = d or {}
        body = d.get("body") or {}
        return cls(
            mime_type=(d.get("mimeType") or "").strip().lower(),
            filename=d.get("filename") or "",
            headers=tuple(
                (h.get("name") or "", h.get("value") or "") for h in (d.get("headers") or [])
            ),
            body_data=body.get("data") or None,
            attachment_id=body.get("attachmentId") or None,
            size=int(body.get("size") or 0),
            part_id=d.get("partId"),
            parts=tuple(cls.from_dict(p) for p in (d.get("parts") or [])),
        )

    def header(self, name: str) -> str:
        """Case-insensitive header lookup; first match wins, "" when absent."""
        wanted = name.lower()
        for key, value in self.headers:
            if key.lower() == wanted:
                return value
        return ""

    @property
    def has_data(self) -> bool:
        return bool(self.body_data)

    @property
    def is_multipart(self) -> bool:
        return self.mime_type.startswith("multipart/")

    def walk(self) -> Iterator["MimePart"]:
        """Pre-order traversal of this part and all descendants."""
        yield self
        for child in self.parts:
            yield from child.walk()


@dataclass(frozen=True)
class Address:
    name: str
    email: str


@dataclass(frozen=True)
class AttachmentInfo:
    """A downloadable file attachment; bytes are fetched later by `attachment_id`."""
    name: str
    mime_type: str
    size: int
    attachment_id: str
    part_id: Optional[str] = None


@dataclass(frozen=True)
class InlineImage:
    """An image part meant to render inside the body via a `cid:` reference."""
    content_id: str
    attachment_id: str
    mime_type: str
    filename: str = ""


@dataclass(frozen=True)
class DecodedEmail:
    """
    Normalized, display-ready view of one provider message.
    `body` is HTML; replace it only through `with_body` once inline images resolve.
    """
    id: str
    thread_id: str
    sender: Address
    subject: str
    date: datetime
    body: str = ""
    preview: str = ""
    to: List[Address] = field(default_factory=list)
    cc: List[Address] = field(default_factory=list)
    attachments: List[AttachmentInfo] = field(default_factory=list)
    inline_images: List[InlineImage] = field(default_factory=list)
    label_ids: List[str] = field(default_factory=list)

    @property
    def is_read(self) -> bool:
        return "UNREAD" not in self.label_ids

    def with_body(self, body: str) -> "DecodedEmail":
        return replace(self, body=body)


@dataclass
class DraftAttachment:
    """
    A file or image to send.
    - `data` is standard base64 text, or raw bytes.
    - `cid` marks a pre-tagged inline image; it goes into multipart/related.
    """
    name: str
    mime_type: str
    data: Union[str, bytes]
    cid: Optional[str] = None

    @classmethod
    def from_path(cls, path: Union[str, Path], mime_type: Optional[str] = None) -> "DraftAttachment":
        path = Path(path)
        try:
            raw = path.read_bytes()
        except OSError as e:
            raise AttachmentEncodeError(f"Cannot read attachment {path}: {e}") from e
        if not mime_type:
            mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return cls(name=path.name, mime_type=mime_type, data=base64.b64encode(raw).decode("ascii"))


@dataclass
class ComposedDraft:
    """
    Everything the encoder needs to build one outgoing message.
    `body_html` may embed user-inserted images as `data:` URIs.
    """
    to: str
    subject: str
    body_html: str
    cc: str = ""
    bcc: str = ""
    attachments: List[DraftAttachment] = field(default_factory=list)
    thread_id: Optional[str] = None
    in_reply_to: Optional[str] = None

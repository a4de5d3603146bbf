"""
Resolve `cid:` image references in decoded HTML bodies into `data:` URIs.

Resolution is asynchronous and best-effort: a message renders first with its
`cid:` references untouched, and its body is replaced once every inline image
of that message has been fetched (or has failed).
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
from typing import (
    Any,
    Callable,
    Dict,
    List,
    MutableMapping,
    Optional,
    Protocol,
    Sequence,
    Set,
    Tuple,
    Union,
)

from .decoder import b64url_decode
from .types import DecodedEmail, InlineImage, MimePart

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 3


class AttachmentFetcher(Protocol):
    """Fetches one attachment; returns the provider response, `{"data": <base64url>}`."""

    async def fetch_attachment(self, message_id: str, attachment_id: str) -> Dict[str, Any]:
        ...


# ------------------ detection ------------------

def detect_inline_images(payload: MimePart) -> List[InlineImage]:
    """
    An image part is inline when it has an attachmentId and any of:
    a Content-ID header, an X-Attachment-Id header, or an `inline` disposition.
    """
    out: List[InlineImage] = []
    for part in payload.walk():
        if not (part.attachment_id and part.mime_type.startswith("image/")):
            continue
        content_id = part.header("content-id") or part.header("x-attachment-id")
        content_id = content_id.strip().replace("<", "").replace(">", "")
        disposition = part.header("content-disposition").lower()
        if content_id or "inline" in disposition:
            out.append(InlineImage(
                content_id=content_id,
                attachment_id=part.attachment_id,
                mime_type=part.mime_type,
                filename=part.filename,
            ))
    return out


# ------------------ replacement ------------------

def to_data_uri(mime_type: str, data: Optional[str]) -> Optional[str]:
    """Turn provider base64url attachment data into a `data:` URI, or None if unusable."""
    raw = b64url_decode(data)
    if not raw:
        return None
    return f"data:{mime_type};base64,{base64.b64encode(raw).decode('ascii')}"


def _cid_patterns(content_id: str) -> List["re.Pattern[str]"]:
    ids = [content_id]
    if "@" in content_id:
        # header carries the suffix, markup may not
        ids.append(content_id.split("@", 1)[0])
    patterns = []
    for cid in ids:
        esc = re.escape(cid)
        patterns.extend([
            re.compile(rf"""src\s*=\s*(["'])cid:<?{esc}>?\1""", re.I),
            re.compile(rf"""src\s*=\s*cid:{esc}(?:@[^\s/>]*)?(?=[\s>]|/>|$)""", re.I),
            re.compile(rf"""src\s*=\s*(["'])cid:{esc}@[^"']*\1""", re.I),
        ])
    return patterns


def replace_cid_references(html: str, content_id: str, data_uri: str) -> Tuple[str, int]:
    """
    Replace every `src` pointing at `cid:<content_id>` with `data_uri`.
    Quoted, unquoted and `@suffix` framings are all tried; returns (html, count).
    """
    if not content_id:
        return html, 0
    replacement = f'src="{data_uri}"'
    total = 0
    for pattern in _cid_patterns(content_id):
        html, n = pattern.subn(lambda _m: replacement, html)
        total += n
    return html, total


def log_unmatched_image(html: str, image: InlineImage) -> None:
    logger.warning("No cid reference replaced for %s (%s)", image.content_id, image.filename)
    if not image.filename:
        return
    m = re.search(
        rf"""<img[^>]*alt=["'][^"']*{re.escape(image.filename)}[^"']*["'][^>]*>""", html, re.I
    )
    if m:
        logger.info("Found img tag by filename for %s: %.200s", image.content_id, m.group(0))


# ------------------ resolution ------------------

async def _fetch_data_uri(
    message_id: str,
    image: InlineImage,
    fetcher: AttachmentFetcher,
    limiter: asyncio.Semaphore,
    cache: Optional[MutableMapping[str, str]],
) -> Optional[str]:
    if cache is not None and image.attachment_id in cache:
        return cache[image.attachment_id]
    try:
        async with limiter:
            resp = await fetcher.fetch_attachment(message_id, image.attachment_id)
    except Exception as e:
        logger.warning("Failed to fetch inline image %s of message %s: %s", image.content_id, message_id, e)
        return None
    data_uri = to_data_uri(image.mime_type, (resp or {}).get("data"))
    if data_uri is None:
        logger.warning("No data returned for inline image %s of message %s", image.content_id, message_id)
        return None
    if cache is not None:
        cache[image.attachment_id] = data_uri
    return data_uri


async def resolve_images(
    message_id: str,
    html: str,
    images: Sequence[InlineImage],
    fetcher: AttachmentFetcher,
    *,
    limiter: Optional[asyncio.Semaphore] = None,
    cache: Optional[MutableMapping[str, str]] = None,
) -> str:
    """
    Fetch `images` concurrently (at most `limiter` at a time) and substitute them into `html`.
    Images that fail stay as `cid:` references.
    """
    images = [img for img in images if img.content_id]
    if not images or "cid:" not in html.lower():
        return html
    limiter = limiter or asyncio.Semaphore(DEFAULT_BATCH_SIZE)
    uris = await asyncio.gather(*(
        _fetch_data_uri(message_id, img, fetcher, limiter, cache) for img in images
    ))
    for img, uri in zip(images, uris):
        if uri is None:
            continue
        html, count = replace_cid_references(html, img.content_id, uri)
        if count == 0:
            log_unmatched_image(html, img)
    return html


async def process_inline_images(
    message_id: str,
    html: str,
    payload: Union[MimePart, Dict[str, Any]],
    fetcher: AttachmentFetcher,
    *,
    limiter: Optional[asyncio.Semaphore] = None,
    cache: Optional[MutableMapping[str, str]] = None,
) -> str:
    """
    Standalone entry point: resolve the inline images of `payload` inside `html`.
    `payload` is the provider's message payload dict or an already-built MimePart.
    """
    if not isinstance(payload, MimePart):
        payload = MimePart.from_dict(payload)
    images = detect_inline_images(payload)
    return await resolve_images(message_id, html, images, fetcher, limiter=limiter, cache=cache)


class InlineImageResolver:
    """
    Schedules inline-image resolution for the messages currently on screen.

    `in_flight` and `resolved` are disjoint: a message id is reserved in
    `in_flight` synchronously, before the first await, so two near-simultaneous
    calls can never both start work for the same message.
    """

    def __init__(
        self,
        fetcher: AttachmentFetcher,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        on_update: Optional[Callable[[DecodedEmail], None]] = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.fetcher = fetcher
        self.batch_size = batch_size
        self.on_update = on_update
        self.in_flight: Set[str] = set()
        self.resolved: Set[str] = set()
        self.cache: Dict[str, str] = {}
        self._limiter = asyncio.Semaphore(batch_size)

    def is_loading(self, message_id: str) -> bool:
        return message_id in self.in_flight

    def needs_resolution(self, message_id: str) -> bool:
        return message_id not in self.resolved and message_id not in self.in_flight

    async def resolve(self, email: DecodedEmail) -> DecodedEmail:
        """Resolve one message now; a no-op if it is already in flight or done."""
        if not self.needs_resolution(email.id):
            return email
        self.in_flight.add(email.id)
        return await self._run(email)

    def schedule_visible(self, emails: Sequence[DecodedEmail]) -> List["asyncio.Task[DecodedEmail]"]:
        """
        Start resolution for up to `batch_size` visible messages; the rest wait for
        the next call. Must be called from a running event loop.
        """
        batch = [e for e in emails if self.needs_resolution(e.id)][:self.batch_size]
        tasks = []
        for email in batch:
            self.in_flight.add(email.id)
            tasks.append(asyncio.create_task(self._run(email)))
        if batch:
            logger.debug("Scheduled inline images for %d message(s)", len(batch))
        return tasks

    async def _run(self, email: DecodedEmail) -> DecodedEmail:
        try:
            body = await resolve_images(
                email.id,
                email.body,
                email.inline_images,
                self.fetcher,
                limiter=self._limiter,
                cache=self.cache,
            )
        finally:
            self.in_flight.discard(email.id)
        self.resolved.add(email.id)
        if body == email.body:
            return email
        updated = email.with_body(body)
        if self.on_update is not None:
            self.on_update(updated)
        return updated

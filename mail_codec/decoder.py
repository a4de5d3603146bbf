"""Charset and transfer-encoding helpers shared by the message decoder and encoder."""

from __future__ import annotations

import base64
import binascii
import codecs
import html
import logging
import re
from email.errors import HeaderParseError
from email.header import decode_header
from email.utils import getaddresses
from typing import Dict, List, Optional

from .types import Address

logger = logging.getLogger(__name__)

FALLBACK_CHARSET = "iso-8859-1"
DEFAULT_CHARSET = "utf-8"

# Loose names seen in the wild -> codec names Python knows.
CHARSET_ALIASES: Dict[str, str] = {
    "utf8": "utf-8",
    "utf-8": "utf-8",
    "latin1": "iso-8859-1",
    "latin-1": "iso-8859-1",
    "iso8859-1": "iso-8859-1",
    "iso-8859-1": "iso-8859-1",
    "iso-8859-15": "iso-8859-15",
    "latin2": "iso-8859-2",
    "iso-8859-2": "iso-8859-2",
    "iso-8859-13": "iso-8859-13",
    "cp1252": "windows-1252",
    "windows-1252": "windows-1252",
    "cp1250": "windows-1250",
    "windows-1250": "windows-1250",
    "cp1251": "windows-1251",
    "windows-1251": "windows-1251",
    "cp1257": "windows-1257",
    "windows-1257": "windows-1257",
    "koi8-r": "koi8-r",
    "koi8-u": "koi8-u",
    # decoded as windows-1252, as browsers do
    "ascii": "windows-1252",
    "us-ascii": "windows-1252",
}

_HEX_DIGITS = frozenset(b"0123456789abcdefABCDEF")
_WHITESPACE_RE = re.compile(r"\s+")
_CHARSET_RE = re.compile(r"""charset\s*=\s*["']?([^"';\s]+)""", flags=re.I)
_ENCODED_WORD_RE = re.compile(r"=\?([^?]+)\?([bBqQ])\?([^?]*)\?=")
_FROM_RE = re.compile(r"(.*)<(.*)>")


# ------------------ transfer encodings ------------------

def b64url_decode(data: str | bytes | None) -> bytes:
    """
    Decode the URL-safe base64 blobs Gmail returns (without guaranteed padding).
    Standard base64 is accepted too. Never raises: bad input gives b"".
    """
    if not data:
        return b""
    if isinstance(data, bytes):
        data = data.decode("ascii", "ignore")
    cleaned = _WHITESPACE_RE.sub("", data).replace("-", "+").replace("_", "/").rstrip("=")
    cleaned += "=" * ((-len(cleaned)) % 4)
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as e:
        logger.warning("base64url decode failed for %d chars: %s", len(data), e)
        return b""


def b64url_encode(data: bytes) -> str:
    """Encode bytes as unpadded URL-safe base64, the provider's `raw` format."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def decode_quoted_printable(data: bytes | str) -> bytes:
    """
    Byte-level quoted-printable decoder.
    Soft breaks (=\\r\\n, =\\n) are dropped, =XX becomes the byte 0xXX,
    anything else (including a stray "=") passes through unchanged.
    """
    if isinstance(data, str):
        data = data.encode("latin-1", "replace")
    out = bytearray()
    i, n = 0, len(data)
    while i < n:
        byte = data[i]
        if byte == 0x3D:  # "="
            if data[i + 1:i + 3] == b"\r\n":
                i += 3
                continue
            if data[i + 1:i + 2] == b"\n":
                i += 2
                continue
            pair = data[i + 1:i + 3]
            if len(pair) == 2 and pair[0] in _HEX_DIGITS and pair[1] in _HEX_DIGITS:
                out.append(int(pair, 16))
                i += 3
                continue
        out.append(byte)
        i += 1
    return bytes(out)


# ------------------ charsets ------------------

def normalize_charset(name: str | None) -> str:
    """
    Map a declared charset to a codec Python can decode with.
    Unknown or unsupported names fall back to iso-8859-1.
    """
    cs = (name or "").strip().strip("\"'").lower()
    if not cs:
        return FALLBACK_CHARSET
    cs = CHARSET_ALIASES.get(cs, cs)
    try:
        codecs.lookup(cs)
    except LookupError:
        logger.warning("Unsupported charset %r, falling back to %s", name, FALLBACK_CHARSET)
        return FALLBACK_CHARSET
    return cs


def charset_from_content_type(ct: str | None) -> Optional[str]:
    if not ct:
        return None
    m = _CHARSET_RE.search(ct)
    return m.group(1) if m else None


def decode_bytes(data: bytes, charset: Optional[str]) -> str:
    """
    Decode bytes into text; undecodable sequences become U+FFFD.
    A missing charset means utf-8, an unknown one means iso-8859-1.
    """
    enc = normalize_charset(charset) if charset else DEFAULT_CHARSET
    try:
        return data.decode(enc, errors="replace")
    except (LookupError, UnicodeError) as e:
        logger.warning("Decoding with %s failed (%s), using %s", enc, e, FALLBACK_CHARSET)
        return data.decode(FALLBACK_CHARSET, errors="replace")


# ------------------ headers ------------------

def _decode_encoded_word(m: re.Match[str]) -> str:
    charset, enc, payload = m.group(1), m.group(2).lower(), m.group(3)
    if enc == "b":
        raw = b64url_decode(payload)
        if not raw and payload:
            return m.group(0)
    else:
        raw = decode_quoted_printable(payload.replace("_", " "))
    # RFC 2231 language suffix: utf-8*en
    return decode_bytes(raw, charset.split("*", 1)[0])


def decode_header_str(value: str | bytes | None) -> str:
    """
    Decode RFC 2047 encoded words (=?cs?B?..?= / =?cs?Q?..?=) into a single Unicode string.
    Segments that are not encoded words pass through literally.
    """
    if value is None:
        return ""
    if isinstance(value, bytes):
        value = value.decode("utf-8", "replace")
    try:
        parts = decode_header(value)
    except HeaderParseError:
        logger.warning("Malformed encoded-word header, decoding word by word: %r", value)
        return _ENCODED_WORD_RE.sub(_decode_encoded_word, value)

    out: List[str] = []
    for text, charset in parts:
        if isinstance(text, bytes):
            if charset:
                out.append(decode_bytes(text, charset.split("*", 1)[0]))
            else:
                # unencoded runs between encoded words come back as raw-unicode-escape bytes
                out.append(text.decode("raw-unicode-escape", "replace"))
        else:
            out.append(text)
    return "".join(out)


def decode_html_entities(text: str | None) -> str:
    """Decode named and numeric HTML entities (&amp;, &#39;, &#x20AC; ...)."""
    if not text:
        return ""
    return html.unescape(text)


# ------------------ addresses ------------------

def parse_addr_list(value: str | None) -> List[Address]:
    """
    Parse a comma-separated list of addresses.
    A missing display name is replaced by the address itself.
    """
    if not value:
        return []
    out: List[Address] = []
    for name, addr in getaddresses([value]):
        addr = addr.strip()
        if not addr:
            continue
        clean_name = decode_header_str(name).strip()
        out.append(Address(name=clean_name or addr, email=addr))
    return out


def split_from_header(value: str | None) -> Address:
    """
    Split `"Display Name" <addr@example.com>` into name and address.
    When the pattern does not match, the raw value is used for both.
    """
    value = (value or "").strip()
    m = _FROM_RE.search(value)
    if not m:
        return Address(name=value, email=value)
    email_addr = m.group(2).strip()
    name = m.group(1).strip().strip('"').strip()
    return Address(name=name or email_addr, email=email_addr)


__all__ = [
    "CHARSET_ALIASES",
    "FALLBACK_CHARSET",
    "b64url_decode",
    "b64url_encode",
    "charset_from_content_type",
    "decode_bytes",
    "decode_header_str",
    "decode_html_entities",
    "decode_quoted_printable",
    "normalize_charset",
    "parse_addr_list",
    "split_from_header",
]

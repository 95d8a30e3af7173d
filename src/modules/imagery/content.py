"""
Content Sniffing & Output Negotiation

Input side: decide what an uploaded payload actually is, in three passes
(byte-prefix sniffing, magic-number table, SVG text signature) and reject
anything that is not a supported image.

Output side: resolve the requested `type` parameter, running Accept header
negotiation when the caller asked for `type=auto`.
"""

import re
from dataclasses import dataclass
from typing import Optional, List, Tuple

import filetype

from src.core.exceptions import InvalidOutputFormatError, UnsupportedMediaTypeError
from src.modules.imagery.models import (
    NEGOTIABLE_FORMATS,
    OutputFormat,
)

OCTET_STREAM = "application/octet-stream"
TEXT_PLAIN = "text/plain; charset=utf-8"
TEXT_XML = "text/xml; charset=utf-8"
SVG_MIME = "image/svg+xml"

SNIFF_LEN = 512

SUPPORTED_IMAGE_TYPES = frozenset({
    "image/jpeg",
    "image/png",
    "image/webp",
    "image/gif",
    "image/tiff",
    "image/bmp",
    "image/heif",
    "image/heic",
    SVG_MIME,
})

# Exact byte prefixes checked in order. Masked and whitespace-tolerant
# patterns are handled separately below.
_PREFIX_SIGNATURES: List[Tuple[bytes, str]] = [
    (b"%PDF-", "application/pdf"),
    (b"%!PS-Adobe-", "application/postscript"),
    (b"\xfe\xff", "text/plain; charset=utf-16be"),
    (b"\xff\xfe", "text/plain; charset=utf-16le"),
    (b"\xef\xbb\xbf", TEXT_PLAIN),
    (b"\x00\x00\x01\x00", "image/x-icon"),
    (b"\x00\x00\x02\x00", "image/x-icon"),
    (b"BM", "image/bmp"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"OggS\x00", "application/ogg"),
    (b"PK\x03\x04", "application/zip"),
    (b"\x1f\x8b\x08", "application/x-gzip"),
    (b"Rar!\x1a\x07\x00", "application/x-rar-compressed"),
    (b"\x00asm", "application/wasm"),
]

_HTML_TAGS = (
    b"<!DOCTYPE HTML", b"<HTML", b"<HEAD", b"<SCRIPT", b"<IFRAME", b"<H1", b"<DIV",
    b"<FONT", b"<TABLE", b"<A", b"<STYLE", b"<TITLE", b"<B", b"<BODY", b"<BR",
    b"<P", b"<!--",
)

_WHITESPACE = b"\t\n\x0c\r "

# Bytes that never appear in text content
_BINARY_BYTES = frozenset(list(range(0x00, 0x09)) + [0x0B] + list(range(0x0E, 0x1B)) + list(range(0x1C, 0x20)))

_SVG_COMMENT_RE = re.compile(r"<!--([\s\S]*?)-->", re.IGNORECASE)
_SVG_RE = re.compile(
    r"^\s*(?:<\?xml[^>]*>\s*)?(?:<!doctype svg[^>]*>\s*)?<svg[^>]*>[^*]*</svg>\s*$",
    re.IGNORECASE,
)


def _match_html(data: bytes) -> bool:
    stripped = data.lstrip(_WHITESPACE)
    upper = stripped[:16].upper()
    for tag in _HTML_TAGS:
        if upper.startswith(tag) and len(stripped) > len(tag):
            terminator = stripped[len(tag):len(tag) + 1]
            if terminator in (b" ", b">"):
                return True
    return False


def sniff_content_type(data: bytes) -> str:
    """
    Byte-prefix sniffing in the style of the WHATWG algorithm.

    Returns "application/octet-stream" when nothing matches and the payload
    looks binary, "text/plain; charset=utf-8" when it looks like text.
    """
    head = data[:SNIFF_LEN]

    if _match_html(head):
        return "text/html; charset=utf-8"
    if head.lstrip(_WHITESPACE)[:5] == b"<?xml":
        return TEXT_XML

    for prefix, mime in _PREFIX_SIGNATURES:
        if head.startswith(prefix):
            return mime

    if len(head) >= 14 and head[:4] == b"RIFF" and head[8:14] == b"WEBPVP":
        return "image/webp"
    if len(head) >= 12 and head[:4] == b"RIFF" and head[8:12] == b"AVI ":
        return "video/avi"
    if len(head) >= 12 and head[:4] == b"RIFF" and head[8:12] == b"WAVE":
        return "audio/wave"

    if any(b in _BINARY_BYTES for b in head):
        return OCTET_STREAM
    return TEXT_PLAIN


def is_svg_image(data: bytes) -> bool:
    """True when the payload is an SVG document."""
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return False
    return bool(_SVG_RE.match(_SVG_COMMENT_RE.sub("", text)))


def detect_mime_type(data: bytes) -> str:
    """Run all three detection passes and return the final MIME type."""
    mime_type = sniff_content_type(data)

    if mime_type == OCTET_STREAM:
        kind = filetype.guess(data)
        if kind is not None and kind.mime:
            mime_type = kind.mime

    if (mime_type.startswith("text/plain") or mime_type.startswith("text/xml")) and len(data) > 8:
        if is_svg_image(data):
            mime_type = SVG_MIME

    return mime_type


def is_supported_image(mime_type: str) -> bool:
    return mime_type.split(";", 1)[0].strip().lower() in SUPPORTED_IMAGE_TYPES


def validate_image_payload(data: bytes) -> str:
    """
    Return the payload's image MIME type.

    Raises:
        UnsupportedMediaTypeError: the payload is not a supported image
    """
    mime_type = detect_mime_type(data)
    if not is_supported_image(mime_type):
        raise UnsupportedMediaTypeError(mime_type)
    return mime_type.split(";", 1)[0]


# =============================================================================
# Output negotiation
# =============================================================================

@dataclass(frozen=True)
class Negotiation:
    """Resolved output format; vary is set when the Accept header decided it."""
    output_format: Optional[OutputFormat]
    vary: Optional[str] = None


def _parse_accept(accept: str) -> List[str]:
    """Media types from an Accept header, highest q first, ties in header order."""
    ranked = []
    for position, item in enumerate(accept.split(",")):
        parts = [p.strip() for p in item.split(";")]
        media_type = parts[0].lower()
        if not media_type:
            continue
        quality = 1.0
        for param in parts[1:]:
            name, _, value = param.partition("=")
            if name.strip().lower() == "q":
                try:
                    quality = float(value)
                except ValueError:
                    quality = 0.0
        if quality <= 0:
            continue
        ranked.append((-quality, position, media_type))
    return [media_type for _, _, media_type in sorted(ranked)]


def negotiate_accept(accept: Optional[str]) -> Optional[OutputFormat]:
    """First of webp/png/jpeg that the Accept header ranks, else None."""
    for media_type in _parse_accept(accept or ""):
        output_format = NEGOTIABLE_FORMATS.get(media_type)
        if output_format is not None:
            return output_format
    return None


def resolve_output_format(requested: Optional[str], accept: Optional[str]) -> Negotiation:
    """
    Resolve the `type` parameter.

    - empty: no explicit format, the engine keeps its default
    - "auto": negotiate from Accept and mark the response as varying on it
    - anything else must be a known OutputFormat

    Raises:
        InvalidOutputFormatError: the requested type is not recognised
    """
    requested = (requested or "").strip().lower()
    if not requested:
        return Negotiation(output_format=None)

    if requested == OutputFormat.AUTO.value:
        return Negotiation(output_format=negotiate_accept(accept), vary="Accept")

    if requested == "jpg":
        requested = OutputFormat.JPEG.value
    try:
        return Negotiation(output_format=OutputFormat(requested))
    except ValueError:
        raise InvalidOutputFormatError(requested)

"""
Encoding helpers for Gmail message bodies and attachments.

Gmail delivers every body and attachment as URL-safe base64, frequently
without padding. Some senders additionally quoted-printable encode the text
*inside* that base64, so a decoded HTML body can still be full of ``=3D`` and
soft line breaks.

Nothing in here raises on malformed input. Every decoder returns a
``Decoded`` result: ``ok=True`` with the decoded value, or ``ok=False`` with
the original input untouched. Callers that only need best-effort text can use
``.value`` directly; callers that care (attachment storage, diagnostics) check
``.ok``.
"""

import base64
import binascii
import logging
import re
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CHARSET = "utf-8"

# RFC 2045 mandates uppercase hex digits in quoted-printable escapes.
_QP_ESCAPE_RUN = re.compile(r"(?:=[0-9A-F]{2})+")
_QP_SOFT_BREAK = re.compile(r"=\r?\n")
_QP_MARKER = re.compile(r"=[0-9A-F]{2}|=\r?\n")


@dataclass(frozen=True)
class Decoded(Generic[T]):
    """Tagged decode result: ``ok`` is False when ``value`` is the raw input."""

    value: T
    ok: bool = True

    @classmethod
    def raw(cls, original: T) -> "Decoded[T]":
        return cls(value=original, ok=False)


# ---------------------------------------------------------------------------
# Base64 (URL-safe)
# ---------------------------------------------------------------------------

def decode_url_safe_base64(data: str) -> Decoded:
    """
    Decode Gmail's URL-safe base64 to bytes.

    Missing padding is restored before decoding. Characters outside the
    base64 alphabet are treated as corruption rather than silently dropped.

    Returns:
        Decoded[bytes] on success, or Decoded.raw(data) (the original str)
        on any failure.
    """
    if not data:
        return Decoded(b"")
    try:
        normalized = re.sub(r"\s+", "", data).replace("-", "+").replace("_", "/")
        normalized += "=" * (-len(normalized) % 4)
        return Decoded(base64.b64decode(normalized, validate=True))
    except (binascii.Error, ValueError) as e:
        logger.debug(f"base64url decode failed ({len(data)} chars): {e}")
        return Decoded.raw(data)


def bytes_to_text(raw: bytes, charset: str = DEFAULT_CHARSET) -> str:
    """
    Decode ``raw`` with the declared charset.

    An unknown charset, or bytes that are invalid in it, fall back to UTF-8
    and then to latin-1, which accepts any byte. Never raises.
    """
    for candidate in (charset or DEFAULT_CHARSET, DEFAULT_CHARSET):
        try:
            return raw.decode(candidate)
        except LookupError:
            logger.debug(f"Unknown charset {candidate!r}; falling back")
        except UnicodeDecodeError:
            pass
    return raw.decode("latin-1")


def decode_base64_text(data: str, charset: str = DEFAULT_CHARSET) -> Decoded:
    """Decode URL-safe base64 to text in ``charset`` (see bytes_to_text)."""
    decoded = decode_url_safe_base64(data)
    if not decoded.ok:
        return decoded
    return Decoded(bytes_to_text(decoded.value, charset))


# ---------------------------------------------------------------------------
# Quoted-printable
# ---------------------------------------------------------------------------

def looks_quoted_printable(text: str) -> bool:
    """True when ``text`` carries an ``=XX`` escape or a soft line break."""
    return bool(_QP_MARKER.search(text))


def decode_quoted_printable(text: str, charset: str = DEFAULT_CHARSET) -> str:
    """
    Expand quoted-printable escapes in already-base64-decoded text.

    Soft line breaks are removed first, then every run of ``=XX`` escapes is
    turned back into the bytes it encodes. Each run is decoded as a whole in
    ``charset`` so multi-byte sequences (=C3=A9) survive. The usual encoder
    artifacts (``=3D`` for '=', ``=20`` for a space) fall out of the same rule.

    Text without any escapes is returned unchanged. On any failure the input
    is returned unchanged.
    """
    if not text:
        return text
    try:
        unfolded = _QP_SOFT_BREAK.sub("", text)
        return _QP_ESCAPE_RUN.sub(
            lambda m: bytes_to_text(bytes.fromhex(m.group(0).replace("=", "")), charset),
            unfolded,
        )
    except Exception as e:
        logger.debug(f"quoted-printable decode failed: {e}")
        return text


# ---------------------------------------------------------------------------
# Body decoding (base64, then conditional quoted-printable)
# ---------------------------------------------------------------------------

def decode_body(data: str, charset: str = DEFAULT_CHARSET) -> Decoded:
    """
    Decode an inline MIME body.

    Base64url first; quoted-printable only if the decoded text shows QP
    markers. Both steps decode bytes in the part's declared ``charset``.
    A base64 failure yields Decoded.raw(data).
    """
    decoded = decode_base64_text(data, charset)
    if not decoded.ok:
        return decoded
    text = decoded.value
    if looks_quoted_printable(text):
        text = decode_quoted_printable(text, charset)
    return Decoded(text)

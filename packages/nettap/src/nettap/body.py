"""Response body decoding.

Bodies are kept as the raw (still content-encoded) chunks received on the
wire and only decoded when a front-end asks for them.

PUBLIC API:
  - DecodedBody: Decoded body as the protocol expects it
  - BodyDecoder: Decompress + charset-convert raw chunks
  - parse_content_type: Split a Content-Type value into mime type and charset
  - is_text_mime: Whether a mime type is shown as text
"""

import base64
import codecs
import logging
import re
import zlib
from dataclasses import dataclass

import brotli

from nettap.errors import DecodeError

__all__ = ["DecodedBody", "BodyDecoder", "parse_content_type", "is_text_mime"]

logger = logging.getLogger(__name__)

_CHARSET_RE = re.compile(r"charset=\"?([^;\"]+)\"?", re.IGNORECASE)
_TEXT_MIME_RE = re.compile(r"^text/|json|xml|javascript|ecmascript|x-www-form-urlencoded|graphql", re.IGNORECASE)


@dataclass(frozen=True)
class DecodedBody:
    """Body ready for Network.getResponseBody."""

    body: str
    base64_encoded: bool

    def to_dict(self) -> dict:
        return {"body": self.body, "base64Encoded": self.base64_encoded}


def parse_content_type(value: str | None) -> tuple[str, str | None]:
    """Split a Content-Type header into (mime_type, charset).

    Examples:
        >>> parse_content_type("application/json; charset=latin-1")
        ('application/json', 'latin-1')
    """
    if not value:
        return "", None
    mime = value.split(";", 1)[0].strip().lower()
    match = _CHARSET_RE.search(value)
    return mime, match.group(1).strip() if match else None


def is_text_mime(mime_type: str) -> bool:
    """True for mime types the front-end should render as text."""
    return bool(mime_type and _TEXT_MIME_RE.search(mime_type))


def _gunzip(data: bytes) -> bytes:
    # wbits 16+MAX_WBITS accepts the gzip header
    return zlib.decompress(data, 16 + zlib.MAX_WBITS)


def _inflate(data: bytes) -> bytes:
    # Servers send both zlib-wrapped and raw deflate under "deflate"
    try:
        return zlib.decompress(data)
    except zlib.error:
        return zlib.decompress(data, -zlib.MAX_WBITS)


_DECOMPRESSORS = {
    "gzip": _gunzip,
    "x-gzip": _gunzip,
    "deflate": _inflate,
    "br": brotli.decompress,
}


class BodyDecoder:
    """Turns raw captured chunks into a DecodedBody.

    The decompression step is chosen strictly from the declared
    Content-Encoding, never sniffed. The charset falls back to UTF-8 when it is
    missing or unknown to Python's codec registry.
    """

    def decode_bytes(self, raw_chunks: list[bytes], content_encoding: str | None) -> bytes:
        """Concatenate chunks and undo every declared content coding.

        Args:
            raw_chunks: Body chunks exactly as received.
            content_encoding: Content-Encoding header value, possibly a
                comma-separated list applied in order.

        Returns:
            Decompressed bytes.

        Raises:
            DecodeError: Unsupported coding or corrupt data.
        """
        data = b"".join(raw_chunks)
        if not content_encoding:
            return data

        codings = [c.strip().lower() for c in content_encoding.split(",") if c.strip()]
        # Codings are listed in the order they were applied
        for coding in reversed(codings):
            if coding == "identity":
                continue
            decompress = _DECOMPRESSORS.get(coding)
            if decompress is None:
                raise DecodeError(f"Unsupported content-encoding: {coding}")
            try:
                data = decompress(data)
            except Exception as e:
                raise DecodeError(f"Failed to decode {coding} body: {e}") from e
        return data

    def decode_text(self, data: bytes, declared_charset: str | None) -> str:
        """Convert bytes to text using the declared charset, else UTF-8.

        Raises:
            DecodeError: Bytes are not valid in the selected charset.
        """
        charset = "utf-8"
        if declared_charset:
            try:
                charset = codecs.lookup(declared_charset).name
            except LookupError:
                logger.debug(f"Unknown charset {declared_charset!r}, falling back to utf-8")
        try:
            return data.decode(charset)
        except UnicodeDecodeError as e:
            raise DecodeError(f"Body is not valid {charset}: {e}") from e

    def decode(
        self,
        raw_chunks: list[bytes],
        content_encoding: str | None,
        declared_charset: str | None,
        mime_type: str = "",
    ) -> DecodedBody:
        """Decode a full body for the front-end.

        Text-like mime types (or an explicit charset) come back as text;
        everything else is base64 of the decompressed bytes.

        Raises:
            DecodeError: Decompression or charset conversion failed.
        """
        data = self.decode_bytes(raw_chunks, content_encoding)
        if declared_charset or is_text_mime(mime_type) or not mime_type:
            try:
                return DecodedBody(body=self.decode_text(data, declared_charset), base64_encoded=False)
            except DecodeError:
                if declared_charset or is_text_mime(mime_type):
                    raise
        return DecodedBody(body=base64.b64encode(data).decode("ascii"), base64_encoded=True)

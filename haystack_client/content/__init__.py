"""Grid wire encodings.

Each codec maps a ``Grid`` to and from one content type. The session picks
the codec from the negotiated content type.
"""

from __future__ import annotations

from ..errors import ProtocolError
from .base import DEFAULT_VERSION, JSON, ZINC, GridCodec
from .json import JsonCodec
from .zinc import ZincCodec

CODECS: dict[str, GridCodec] = {
    ZINC: ZincCodec(),
    JSON: JsonCodec(),
}


def get_codec(content_type: str) -> GridCodec:
    """Return the codec for a content type, ignoring media type parameters."""
    media_type = content_type.split(";", 1)[0].strip().lower()
    codec = CODECS.get(media_type)
    if codec is None:
        raise ProtocolError(f"Unsupported content type: {content_type}")
    return codec


__all__ = [
    "CODECS",
    "DEFAULT_VERSION",
    "JSON",
    "ZINC",
    "GridCodec",
    "JsonCodec",
    "ZincCodec",
    "get_codec",
]

"""Protocol helpers for Haystack HTTP requests.

Builds operation URLs, query strings and ``Authorization`` headers, and
parses the ``WWW-Authenticate`` / ``Authentication-Info`` headers the server
answers with.
"""

from __future__ import annotations

from typing import Final
from urllib.parse import quote

from .crypto import b64url_encode
from .grid import MARKER, Grid, to_display

DEFAULT_URI: Final = "http://localhost:3000/api"

OP_ABOUT: Final = "about"
OP_CLOSE: Final = "close"
OP_WATCH_SUB: Final = "watchSub"
OP_WATCH_UNSUB: Final = "watchUnsub"
OP_WATCH_POLL: Final = "watchPoll"

KNOWN_OPS: Final = (
    "about",
    "defs",
    "libs",
    "ops",
    "filetypes",
    "nav",
    "read",
    OP_WATCH_SUB,
    OP_WATCH_UNSUB,
    OP_WATCH_POLL,
    "pointWrite",
    "hisRead",
    "hisWrite",
    "invokeAction",
    OP_CLOSE,
)

WATCH_OPS: Final = frozenset({OP_WATCH_SUB, OP_WATCH_UNSUB, OP_WATCH_POLL})

# Characters encodeURIComponent leaves alone.
_URI_SAFE: Final = "-_.!~*'()"


def build_url(uri: str, op: str, query: str = "") -> str:
    """Build ``<uri>/<op>/`` with an optional query string."""
    return f"{uri.rstrip('/')}/{op}/{query}"


def to_query(grid: Grid) -> str:
    """Encode the first row of a request grid as a query string.

    Each column becomes ``name=value``, or a bare ``name`` when its value is
    empty or a marker.
    """
    params = []
    for x, name in enumerate(grid.names):
        raw = grid.raw(x, 0)
        param = quote(name, safe=_URI_SAFE)
        if raw is not MARKER:
            value = to_display(raw)
            if value != "":
                param += "=" + quote(value, safe=_URI_SAFE)
        params.append(param)
    return "?" + "&".join(params) if params else ""


def build_auth_hello(username: str) -> str:
    return f"HELLO username={b64url_encode(username)}"


def build_auth_scram(data: str, handshake_token: str | None = None) -> str:
    header = f"SCRAM data={data}"
    if handshake_token is not None:
        header += f", handshakeToken={handshake_token}"
    return header


def build_auth_plaintext(username: str, password: str) -> str:
    return (
        f"PLAINTEXT username={b64url_encode(username)}, "
        f"password={b64url_encode(password)}"
    )


def build_auth_bearer(token: str) -> str:
    return f"BEARER authToken={token}"


def parse_parameters(text: str) -> dict[str, str]:
    """Parse ``name=value, name=value`` pairs.

    Values are split at the first ``=`` only, so base64 padding survives.
    """
    params: dict[str, str] = {}
    for part in text.split(","):
        name, _, value = part.strip().partition("=")
        if name:
            params[name] = value
    return params


def parse_methods(header: str) -> dict[str, dict[str, str]]:
    """Parse a ``WWW-Authenticate`` header into auth methods.

    Methods are separated by ``;``. Each starts with its scheme name
    (lower-cased in the result) followed by its parameters.
    """
    methods: dict[str, dict[str, str]] = {}
    for part in header.split(";"):
        scheme, _, params = part.strip().partition(" ")
        if scheme:
            methods[scheme.lower()] = parse_parameters(params)
    return methods

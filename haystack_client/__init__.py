"""Async client for Project Haystack REST servers."""

__version__ = "0.1.0"

from .auth import HaystackAuthenticator
from .config import HaystackConfig, load_config
from .content import JSON, ZINC, get_codec
from .errors import (
    AuthError,
    ConfigError,
    GridError,
    HaystackClientError,
    HaystackConnectionError,
    HaystackResponseError,
    HaystackTimeout,
    ProtocolError,
    SessionError,
    TransportError,
)
from .grid import MARKER, Coord, Grid, Number, Ref, Symbol, Uri, cell_type
from .http import HaystackHttpClient, HttpResponse
from .session import (
    NOOP_RESPONSE,
    HaystackRequest,
    HaystackResponse,
    HaystackSession,
    WatchCounters,
    WatchRecord,
    parse_duration,
)

__all__ = [
    "JSON",
    "MARKER",
    "NOOP_RESPONSE",
    "ZINC",
    "AuthError",
    "ConfigError",
    "Coord",
    "Grid",
    "GridError",
    "HaystackAuthenticator",
    "HaystackClientError",
    "HaystackConfig",
    "HaystackConnectionError",
    "HaystackHttpClient",
    "HaystackRequest",
    "HaystackResponse",
    "HaystackResponseError",
    "HaystackSession",
    "HaystackTimeout",
    "HttpResponse",
    "Number",
    "ProtocolError",
    "Ref",
    "SessionError",
    "Symbol",
    "TransportError",
    "Uri",
    "WatchCounters",
    "WatchRecord",
    "__version__",
    "cell_type",
    "get_codec",
    "load_config",
    "parse_duration",
]

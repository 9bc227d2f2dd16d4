"""Client error types for Project Haystack server interactions."""

from __future__ import annotations


class HaystackClientError(Exception):
    """Base error for Haystack client failures."""


class ProtocolError(HaystackClientError):
    """Server or caller asked for something this client does not speak.

    Raised for unsupported content types, hash algorithms, auth methods
    and HTTP methods.
    """


class AuthError(HaystackClientError):
    """Authentication handshake failed."""


class TransportError(HaystackClientError):
    """Request could not be completed.

    ``status`` carries the HTTP status when the server answered, and is
    ``None`` for network level failures.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class HaystackTimeout(TransportError):
    """Timeout while communicating with the server."""


class HaystackConnectionError(TransportError):
    """Network connection to the server failed."""


class HaystackResponseError(TransportError):
    """HTTP response error from the server."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message, status)


class GridError(HaystackClientError):
    """Grid wire text could not be parsed."""


class ConfigError(HaystackClientError):
    """Invalid configuration value."""


class SessionError(HaystackClientError):
    """Operation not valid in the current session state."""

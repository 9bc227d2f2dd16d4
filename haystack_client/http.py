"""HTTP transport for Haystack server endpoints."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol

import aiohttp

from .errors import HaystackConnectionError, HaystackTimeout

_LOGGER = logging.getLogger(__name__)

# Repeated challenge headers carry one auth method each.
_METHOD_HEADERS = frozenset({"www-authenticate"})


def _collect_headers(items: Iterable[tuple[str, str]]) -> dict[str, str]:
    """Lower-case header names and join repeated headers into one value."""
    headers: dict[str, str] = {}
    for name, value in items:
        key = name.lower()
        if key in headers:
            separator = "; " if key in _METHOD_HEADERS else ", "
            headers[key] = f"{headers[key]}{separator}{value}"
        else:
            headers[key] = value
    return headers


@dataclass(frozen=True)
class HttpResponse:
    """Status, headers and body of a completed request.

    Header names are stored lower-cased.
    """

    status: int
    reason: str = ""
    headers: dict[str, str] = field(default_factory=lambda: {})
    text: str = ""

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())


class Transport(Protocol):
    """Sends one HTTP request and returns the complete response."""

    async def send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: str | None = None,
    ) -> HttpResponse: ...


class HaystackHttpClient:
    """aiohttp backed transport for Haystack servers."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        timeout: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self._session = session
        self._timeout = timeout
        self._logger = logger or _LOGGER

    async def send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: str | None = None,
    ) -> HttpResponse:
        """Send a request and read the whole body as text.

        Raises:
            HaystackTimeout: If the request times out
            HaystackConnectionError: If the network request fails
        """
        self._logger.debug("REQ: %s %s %s", method, url, (body or "").replace("\n", "\\n"))
        try:
            async with self._session.request(
                method,
                url,
                headers=headers,
                data=body.encode("utf-8") if body is not None else None,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as resp:
                text = await resp.text()
                self._logger.debug("RES: %s %s", resp.status, resp.reason)
                return HttpResponse(
                    status=resp.status,
                    reason=resp.reason or "",
                    headers=_collect_headers(resp.headers.items()),
                    text=text,
                )
        except TimeoutError as err:
            self._logger.debug("ERR: %s timed out", url)
            raise HaystackTimeout(f"Request timed out: {url}") from err
        except aiohttp.ClientError as err:
            self._logger.debug("ERR: %s", err)
            raise HaystackConnectionError(f"Request failed: {url}") from err

"""Pytest configuration and fixtures for haystack_client tests."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from haystack_client.http import HttpResponse


@pytest.fixture
def mock_session() -> MagicMock:
    """Create a mock aiohttp ClientSession."""
    import aiohttp

    return MagicMock(spec=aiohttp.ClientSession)


@pytest.fixture
def transport() -> AsyncMock:
    """Create a mock transport; queue responses on ``send.side_effect``."""
    client = AsyncMock()
    client.send = AsyncMock()
    return client


def create_mock_response(
    status: int = 200,
    reason: str = "OK",
    headers: dict[str, str] | None = None,
    text_data: str = "",
) -> AsyncMock:
    """Create a configured mock aiohttp response.

    Args:
        status: HTTP status code
        reason: HTTP reason phrase
        headers: Response headers
        text_data: Data to return from text() call

    Returns:
        Configured AsyncMock response usable as an async context manager
    """
    response = AsyncMock()
    response.status = status
    response.reason = reason
    response.headers = MagicMock()
    response.headers.items.return_value = list((headers or {}).items())
    response.text.return_value = text_data

    response.__aenter__.return_value = response
    response.__aexit__.return_value = None

    return response


def http_response(
    status: int = 200,
    text: str = "",
    headers: dict[str, str] | None = None,
    reason: str = "OK",
) -> HttpResponse:
    """Build a transport-level response."""
    return HttpResponse(
        status=status,
        reason=reason,
        headers={name.lower(): value for name, value in (headers or {}).items()},
        text=text,
    )


def zinc_response(text: str, status: int = 200) -> HttpResponse:
    return http_response(status, text, {"Content-Type": "text/zinc; charset=utf-8"})


def json_response(text: str, status: int = 200) -> HttpResponse:
    return http_response(status, text, {"Content-Type": "application/json"})

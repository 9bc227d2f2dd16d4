"""Test the login handshake state machine."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from haystack_client import auth
from haystack_client.auth import HaystackAuthenticator
from haystack_client.crypto import b64url_decode, b64url_encode
from haystack_client.errors import AuthError, ProtocolError
from haystack_client.http import HttpResponse
from haystack_client.protocol import parse_methods

from .conftest import http_response

URI = "http://localhost:8080/api"

# RFC 7677 SCRAM-SHA-256 exchange.
CLIENT_NONCE = "rOprNGfwEbeRWgbNEkqO"
SERVER_FIRST = (
    "r=rOprNGfwEbeRWgbNEkqO%hvYDpWUa2RaTCAfuxFIlj)hNlF$k0,"
    "s=W22ZaJ0SNY7soEsUEjb6gQ==,i=4096"
)
CLIENT_PROOF = "dHzbZapWIk4jUhN+Ute9ytag9zjfMHgsqmmiz7AndVQ="
SERVER_SIGNATURE = "6rriTRBi23WpRR/wtup+mMhUZUn/dB5nLTJRsjl95G4="


def _hello(methods: str = "SCRAM handshakeToken=hs1, hash=SHA-256") -> HttpResponse:
    return http_response(401, headers={"WWW-Authenticate": methods}, reason="Unauthorized")


def _server_first() -> HttpResponse:
    return http_response(
        401,
        headers={
            "WWW-Authenticate": (
                f"SCRAM handshakeToken=hs2, hash=SHA-256, data={b64url_encode(SERVER_FIRST)}"
            )
        },
        reason="Unauthorized",
    )


def _final(signature: str = SERVER_SIGNATURE) -> HttpResponse:
    return http_response(
        200,
        headers={
            "Authentication-Info": (
                f"authToken=tok123, hash=SHA-256, data={b64url_encode('v=' + signature)}"
            )
        },
    )


def _sent_data(transport: AsyncMock, call: int) -> tuple[str, dict[str, str]]:
    """Decode the SCRAM data and parameters sent in one request."""
    header = transport.send.call_args_list[call].args[2]["Authorization"]
    params = parse_methods(header)["scram"]
    return b64url_decode(params["data"]).decode("utf-8"), params


@pytest.fixture
def rfc_vector(monkeypatch: pytest.MonkeyPatch) -> None:
    """Pin the nonce and GS2 header to the published exchange."""
    monkeypatch.setattr(auth, "nonce", lambda length: CLIENT_NONCE)
    monkeypatch.setattr(auth, "GS2_HEADER", "n,,")


class TestAnonymous:
    """No credentials means no handshake."""

    async def test_no_credentials(self, transport: AsyncMock) -> None:
        authenticator = HaystackAuthenticator(transport)

        assert await authenticator.authenticate(URI) is None
        transport.send.assert_not_called()

    async def test_password_without_username(self, transport: AsyncMock) -> None:
        authenticator = HaystackAuthenticator(transport, None, "pencil")

        assert await authenticator.authenticate(URI) is None


class TestScram:
    """SCRAM exchange."""

    async def test_rfc_exchange(self, transport: AsyncMock, rfc_vector: None) -> None:
        """Client proof and server signature match RFC 7677."""
        transport.send.side_effect = [_hello(), _server_first(), _final()]
        authenticator = HaystackAuthenticator(transport, "user", "pencil")

        token = await authenticator.authenticate(URI)

        assert token == "tok123"
        assert transport.send.await_count == 3

        method, url, headers = transport.send.call_args_list[0].args[:3]
        assert method == "GET"
        assert url == f"{URI}/about/"
        assert headers == {"Authorization": "HELLO username=dXNlcg"}

        client_first, params = _sent_data(transport, 1)
        assert client_first == f"n,,n=user,r={CLIENT_NONCE}"
        assert params["handshakeToken"] == "hs1"

        client_final, params = _sent_data(transport, 2)
        assert client_final == (
            "c=biws,r=rOprNGfwEbeRWgbNEkqO%hvYDpWUa2RaTCAfuxFIlj)hNlF$k0,"
            f"p={CLIENT_PROOF}"
        )
        assert params["handshakeToken"] == "hs2"

    async def test_default_gs2_header(self, transport: AsyncMock) -> None:
        transport.send.side_effect = [_hello(), AuthError("stop")]
        authenticator = HaystackAuthenticator(transport, "user", "pencil")

        with pytest.raises(AuthError):
            await authenticator.authenticate(URI)

        client_first, _ = _sent_data(transport, 1)
        assert client_first.startswith("m,,n=user,r=")
        assert len(client_first) == len("m,,n=user,r=") + 24

    async def test_server_signature_mismatch(
        self, transport: AsyncMock, rfc_vector: None
    ) -> None:
        transport.send.side_effect = [
            _hello(),
            _server_first(),
            _final("AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA="),
        ]
        authenticator = HaystackAuthenticator(transport, "user", "pencil")

        with pytest.raises(AuthError, match="Server signature mismatch"):
            await authenticator.authenticate(URI)

    async def test_token_without_signature(
        self, transport: AsyncMock, rfc_vector: None
    ) -> None:
        transport.send.side_effect = [
            _hello(),
            _server_first(),
            http_response(200, headers={"Authentication-Info": "authToken=tok9"}),
        ]
        authenticator = HaystackAuthenticator(transport, "user", "pencil")

        assert await authenticator.authenticate(URI) == "tok9"

    async def test_nonce_not_extended(self, transport: AsyncMock, rfc_vector: None) -> None:
        bad_first = "r=someoneelse,s=W22ZaJ0SNY7soEsUEjb6gQ==,i=4096"
        transport.send.side_effect = [
            _hello(),
            http_response(
                401,
                headers={
                    "WWW-Authenticate": f"SCRAM hash=SHA-256, data={b64url_encode(bad_first)}"
                },
            ),
        ]
        authenticator = HaystackAuthenticator(transport, "user", "pencil")

        with pytest.raises(AuthError, match="nonce"):
            await authenticator.authenticate(URI)

    async def test_unsupported_hash_at_hello(self, transport: AsyncMock) -> None:
        transport.send.side_effect = [_hello("SCRAM handshakeToken=x, hash=MD5")]
        authenticator = HaystackAuthenticator(transport, "user", "pencil")

        with pytest.raises(ProtocolError, match="Unsupported hash function"):
            await authenticator.authenticate(URI)
        assert transport.send.await_count == 1

    async def test_final_rejected(self, transport: AsyncMock, rfc_vector: None) -> None:
        transport.send.side_effect = [
            _hello(),
            _server_first(),
            http_response(403, reason="Forbidden"),
        ]
        authenticator = HaystackAuthenticator(transport, "user", "pencil")

        with pytest.raises(AuthError, match="Failed to authenticate: Forbidden"):
            await authenticator.authenticate(URI)

    async def test_final_without_token(self, transport: AsyncMock, rfc_vector: None) -> None:
        transport.send.side_effect = [
            _hello(),
            _server_first(),
            http_response(200, headers={"Authentication-Info": "hash=SHA-256"}),
        ]
        authenticator = HaystackAuthenticator(transport, "user", "pencil")

        with pytest.raises(AuthError, match="Failed to receive token"):
            await authenticator.authenticate(URI)


class TestHello:
    """Method negotiation."""

    async def test_hello_must_be_401(self, transport: AsyncMock) -> None:
        transport.send.side_effect = [http_response(200, reason="OK")]
        authenticator = HaystackAuthenticator(transport, "user", "pencil")

        with pytest.raises(AuthError, match="Failed to announce user: OK"):
            await authenticator.authenticate(URI)

    async def test_missing_challenge_header(self, transport: AsyncMock) -> None:
        transport.send.side_effect = [http_response(401, reason="Unauthorized")]
        authenticator = HaystackAuthenticator(transport, "user", "pencil")

        with pytest.raises(AuthError, match="www-authenticate"):
            await authenticator.authenticate(URI)

    async def test_unsupported_method(self, transport: AsyncMock) -> None:
        transport.send.side_effect = [_hello("BASIC realm=x; DIGEST nonce=y")]
        authenticator = HaystackAuthenticator(transport, "user", "pencil")

        with pytest.raises(ProtocolError, match="Unsupported auth method: basic, digest"):
            await authenticator.authenticate(URI)

    async def test_plaintext_fallback(self, transport: AsyncMock) -> None:
        transport.send.side_effect = [
            _hello("PLAINTEXT"),
            http_response(200, headers={"Authentication-Info": "authToken=plain1"}),
        ]
        authenticator = HaystackAuthenticator(transport, "user", "pencil")

        assert await authenticator.authenticate(URI) == "plain1"
        headers = transport.send.call_args_list[1].args[2]
        assert headers["Authorization"] == "PLAINTEXT username=dXNlcg, password=cGVuY2ls"

    async def test_scram_preferred(self, transport: AsyncMock) -> None:
        transport.send.side_effect = [
            _hello("PLAINTEXT; SCRAM hash=SHA-256"),
            http_response(500, reason="Server Error"),
        ]
        authenticator = HaystackAuthenticator(transport, "user", "pencil")

        with pytest.raises(AuthError, match="Failed client first message"):
            await authenticator.authenticate(URI)
        headers = transport.send.call_args_list[1].args[2]
        assert headers["Authorization"].startswith("SCRAM data=")

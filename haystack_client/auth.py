"""Haystack login handshake.

The client announces itself with ``HELLO``, the server answers 401 with the
methods it accepts, and the client completes either a SCRAM exchange or a
single PLAINTEXT request. A successful exchange ends with a 200 response
whose ``Authentication-Info`` header carries the bearer ``authToken``.

All handshake requests go to ``<uri>/about/``.
"""

from __future__ import annotations

import hmac
import logging
from typing import Final

from .crypto import (
    b64decode,
    b64encode,
    b64url_decode,
    b64url_encode,
    digest,
    get_hash,
    hmac_digest,
    nonce,
    pbkdf2_hmac,
    xor,
)
from .errors import AuthError, ProtocolError
from .http import HttpResponse, Transport
from .protocol import (
    OP_ABOUT,
    build_auth_hello,
    build_auth_plaintext,
    build_auth_scram,
    build_url,
    parse_methods,
    parse_parameters,
)

_LOGGER = logging.getLogger(__name__)

# GS2 header prefixed to the client-first message; its base64 is echoed as c=.
GS2_HEADER: Final = "m,,"
NONCE_LENGTH: Final = 24

S_OK: Final = 200
S_UNAUTHORIZED: Final = 401


class HaystackAuthenticator:
    """Negotiates a bearer token for one set of credentials."""

    def __init__(
        self,
        transport: Transport,
        username: str | None = None,
        password: str | None = None,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._transport = transport
        self._username = username
        self._password = password
        self._logger = logger or _LOGGER

    @property
    def has_credentials(self) -> bool:
        return bool(self._username) and bool(self._password)

    async def authenticate(self, uri: str) -> str | None:
        """Run the handshake against ``uri``.

        Returns:
            The bearer token, or None when no credentials are configured.

        Raises:
            AuthError: If the server rejects any step of the handshake
            ProtocolError: If the server offers no supported method or hash
        """
        if not self.has_credentials:
            self._logger.debug("[%s] No credentials, using anonymous session", uri)
            return None

        res = await self._send(uri, build_auth_hello(self._username or ""))
        if res.status != S_UNAUTHORIZED:
            raise AuthError(f"Failed to announce user: {res.reason}")

        methods = parse_methods(self._header(res, "www-authenticate"))
        self._logger.debug("[%s] Server auth methods: %s", uri, ", ".join(methods))

        if "scram" in methods:
            return await self._scram(uri, methods["scram"])
        if "plaintext" in methods:
            return await self._plaintext(uri)

        raise ProtocolError(f"Unsupported auth method: {', '.join(methods)}")

    # -------------------------------------------------------------------------
    # Internal: SCRAM
    # -------------------------------------------------------------------------

    async def _scram(self, uri: str, hello: dict[str, str]) -> str:
        if "hash" in hello:
            get_hash(hello["hash"])

        username = self._username or ""
        client_nonce = nonce(NONCE_LENGTH)
        client_first = f"n={username},r={client_nonce}"

        res = await self._send(
            uri,
            build_auth_scram(
                b64url_encode(GS2_HEADER + client_first), hello.get("handshakeToken")
            ),
        )
        if res.status != S_UNAUTHORIZED:
            raise AuthError(f"Failed client first message: {res.reason}")

        challenge = parse_methods(self._header(res, "www-authenticate")).get("scram")
        if challenge is None or "data" not in challenge:
            raise AuthError("Missing SCRAM server first message")

        return await self._scram_final(uri, client_first, client_nonce, challenge, hello)

    async def _scram_final(
        self,
        uri: str,
        client_first: str,
        client_nonce: str,
        challenge: dict[str, str],
        hello: dict[str, str],
    ) -> str:
        hash_name, key_length = get_hash(challenge.get("hash") or hello.get("hash"))

        server_first = b64url_decode(challenge["data"]).decode("utf-8")
        params = parse_parameters(server_first)

        server_nonce = params.get("r", "")
        if not server_nonce.startswith(client_nonce):
            raise AuthError("Server nonce does not extend client nonce")
        try:
            salt = b64decode(params["s"])
            iterations = int(params["i"])
        except (KeyError, ValueError) as err:
            raise AuthError(f"Malformed SCRAM server first message: {err}") from err

        no_proof = f"c={b64url_encode(GS2_HEADER)},r={server_nonce}"
        auth_message = f"{client_first},{server_first},{no_proof}"

        salted = pbkdf2_hmac(hash_name, self._password or "", salt, iterations, key_length)
        client_key = hmac_digest(hash_name, salted, "Client Key")
        stored_key = digest(hash_name, client_key)
        client_signature = hmac_digest(hash_name, stored_key, auth_message)
        proof = b64encode(xor(client_key, client_signature))

        res = await self._send(
            uri,
            build_auth_scram(
                b64url_encode(f"{no_proof},p={proof}"), challenge.get("handshakeToken")
            ),
        )
        info = self._token_info(res)

        if "data" in info:
            server_key = hmac_digest(hash_name, salted, "Server Key")
            expected = b64encode(hmac_digest(hash_name, server_key, auth_message))
            final = parse_parameters(b64url_decode(info["data"]).decode("utf-8"))
            if not hmac.compare_digest(final.get("v", ""), expected):
                raise AuthError("Server signature mismatch")

        self._logger.info("[%s] Authenticated with SCRAM %s", uri, hash_name)
        return info["authToken"]

    # -------------------------------------------------------------------------
    # Internal: PLAINTEXT
    # -------------------------------------------------------------------------

    async def _plaintext(self, uri: str) -> str:
        res = await self._send(
            uri, build_auth_plaintext(self._username or "", self._password or "")
        )
        info = self._token_info(res)
        self._logger.info("[%s] Authenticated with PLAINTEXT", uri)
        return info["authToken"]

    # -------------------------------------------------------------------------
    # Internal: Helpers
    # -------------------------------------------------------------------------

    def _token_info(self, res: HttpResponse) -> dict[str, str]:
        """Return the ``Authentication-Info`` parameters of a final response."""
        if res.status != S_OK:
            raise AuthError(f"Failed to authenticate: {res.reason}")
        info = parse_parameters(self._header(res, "authentication-info"))
        if not info.get("authToken"):
            raise AuthError("Failed to receive token")
        return info

    @staticmethod
    def _header(res: HttpResponse, name: str) -> str:
        value = res.header(name)
        if value is None:
            raise AuthError(f"Missing response header: {name}")
        return value

    async def _send(self, uri: str, authorization: str) -> HttpResponse:
        return await self._transport.send(
            "GET", build_url(uri, OP_ABOUT), {"Authorization": authorization}
        )

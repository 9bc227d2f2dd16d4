"""High-level session manager for Haystack servers.

This module provides the canonical API for talking to a Haystack server. It
handles:
- Authentication and bearer tokens
- Request defaults, encoding and decoding
- Watch subscribe, poll and unsubscribe
- Transparent re-authentication when the server expires the token
- Routing poll results to per-entity observers

All state belongs to one session; independent sessions share nothing.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import re
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field, replace
from typing import Any, Final

from .auth import HaystackAuthenticator
from .content import DEFAULT_VERSION, ZINC, get_codec
from .errors import (
    ConfigError,
    GridError,
    HaystackClientError,
    HaystackResponseError,
    ProtocolError,
    SessionError,
)
from .grid import Grid, Number, Ref, to_display
from .http import HttpResponse, Transport
from .protocol import (
    DEFAULT_URI,
    OP_ABOUT,
    OP_CLOSE,
    OP_WATCH_POLL,
    OP_WATCH_SUB,
    OP_WATCH_UNSUB,
    WATCH_OPS,
    build_auth_bearer,
    build_url,
    to_query,
)

_LOGGER = logging.getLogger(__name__)

DEFAULT_METHOD: Final = "POST"
DEFAULT_LEASE: Final = "1min"
DEFAULT_POLL_INTERVAL: Final = "5s"
DEFAULT_WATCH_NAME: Final = "haystack-client"

S_OK: Final = 200
S_FORBIDDEN: Final = 403

# Token not negotiated yet; None means intentionally anonymous.
_UNSET: Final = object()

_DURATION_RE = re.compile(r"\s*(\d+)\s*([a-z]*)\s*", re.IGNORECASE)
_DURATION_UNITS: Final = {
    "h": 3_600_000,
    "hr": 3_600_000,
    "m": 60_000,
    "min": 60_000,
    "s": 1000,
    "sec": 1000,
    "ms": 1,
    "": 1,
}


def parse_duration(value: str | int) -> int:
    """Parse ``<integer><unit>`` into milliseconds.

    Units are ``h``/``hr``, ``m``/``min``, ``s``/``sec`` and ``ms`` (or no
    unit), case-insensitive. Plain integers are taken as milliseconds.

    Raises:
        ConfigError: If the text is not a whole number with a known unit
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    match = _DURATION_RE.fullmatch(str(value))
    if match is None:
        raise ConfigError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    factor = _DURATION_UNITS.get(unit.lower())
    if factor is None:
        raise ConfigError(f"Invalid duration unit: {value!r}")
    return int(amount) * factor


def normalize_id(entity_id: str) -> str:
    """Strip whitespace and the leading ``@`` from an entity id."""
    entity_id = entity_id.strip()
    return entity_id[1:] if entity_id.startswith("@") else entity_id


@dataclass
class HaystackRequest:
    """One operation call; unset fields take the session defaults."""

    op: str | None = None
    method: str | None = None
    content: str | None = None
    accept: str | None = None
    version: str | None = None
    grid: Grid = field(default_factory=Grid)
    raw: bool = False


@dataclass(frozen=True)
class HaystackResponse:
    """Decoded server answer.

    ``error`` holds the message of a server ``err`` grid. ``grid`` is None
    for raw requests, where ``text`` carries the body unchanged.
    """

    status: int
    content: str
    text: str = ""
    error: str | None = None
    grid: Grid | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


# Returned for watch operations aborted by token recovery.
NOOP_RESPONSE: Final = HaystackResponse(status=0, content="")

WatchCallback = Callable[["WatchRecord", Grid, int], Awaitable[None] | None]
WatchUpdateCallback = Callable[["HaystackSession", Grid], Awaitable[None] | None]


@dataclass(slots=True)
class WatchRecord:
    """Subscribed entity and its optional observer."""

    id: str
    callback: WatchCallback | None = None


@dataclass(slots=True)
class WatchCounters:
    polls: int = 0
    updates: int = 0
    errors: int = 0


class HaystackSession:
    """Authenticated connection to one Haystack server.

    Usage:
        async with aiohttp.ClientSession() as http:
            session = HaystackSession(HaystackHttpClient(http), uri, username="su", password="pw")
            async with session:
                res = await session.request(HaystackRequest(op="read", grid=query))
                await session.subscribe(["@p1", "@p2"], on_point)
    """

    def __init__(
        self,
        transport: Transport,
        uri: str | None = None,
        *,
        username: str | None = None,
        password: str | None = None,
        token: Any = _UNSET,
        version: str = DEFAULT_VERSION,
        content: str = ZINC,
        accept: str | None = None,
        lease: str | int = DEFAULT_LEASE,
        poll_interval: str | int = DEFAULT_POLL_INTERVAL,
        watch_name: str = DEFAULT_WATCH_NAME,
        logger: logging.Logger | None = None,
    ):
        """Initialize session.

        Args:
            transport: Sends HTTP requests
            uri: Server API root, ``http://localhost:3000/api`` when omitted
            username: Login name; no handshake runs without credentials
            password: Login password
            token: Pre-supplied bearer token (None for anonymous)
            version: Haystack protocol version sent in request grids
            content: Request content type
            accept: Response content type, same as ``content`` when omitted
            lease: Watch lease as a duration string or milliseconds
            poll_interval: Delay between watch polls
            watch_name: Display name of watches this session opens
        """
        get_codec(content)

        self.uri = uri
        self.username = username
        self.version = version
        self.content = content
        self.accept = accept
        self.lease = parse_duration(lease)
        self.poll_interval = parse_duration(poll_interval)
        self.watch_name = watch_name
        self.counters = WatchCounters()

        self._transport = transport
        self._logger = logger or _LOGGER
        self._authenticator = HaystackAuthenticator(
            transport, username, password, logger=self._logger
        )

        # Connection state
        self._token: Any = token
        self._connection_state = "closed"

        # Watch state
        self._watch_id: str | None = None
        self._watches: dict[str, WatchRecord] = {}
        self._watch_columns: tuple[str, ...] | None = None
        self._refresh_pending = False
        self._poll_task: asyncio.Task[None] | None = None

        # Token recovery
        self._recovery_lock = asyncio.Lock()

        # Callbacks
        self._state_callback: Callable[[str], None] | None = None
        self._watch_callback: WatchUpdateCallback | None = None

    async def __aenter__(self) -> HaystackSession:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.end()

    # -------------------------------------------------------------------------
    # Public API: Connection Management
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Authenticate (when needed) and open the session.

        Raises:
            AuthError: If the login handshake fails
            ProtocolError: If the server offers no supported auth method
            TransportError: If the server cannot be reached
        """
        self.counters = WatchCounters()
        await self._open()

    async def end(self) -> None:
        """Stop polling, close the watch and the server session."""
        task = self._poll_task
        self._stop_poll_timer()
        if task is not None and task is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if self._watch_id is not None:
            await self._unsubscribe(None, retry=False)
        self._stop_poll_timer()

        if isinstance(self._token, str):
            try:
                await self._request(self._prepare(HaystackRequest(op=OP_CLOSE)), retry=False)
            except HaystackClientError as err:
                self._logger.warning("[%s] Close failed: %s", self.uri, err)

        self._token = _UNSET
        self._watch_id = None
        self._watches.clear()
        self._set_state("closed")
        self._logger.info("[%s] Session closed", self.uri)

    @property
    def is_open(self) -> bool:
        return self._connection_state != "closed"

    @property
    def connection_state(self) -> str:
        """Get current connection state: "closed", "open" or "watching"."""
        return self._connection_state

    @property
    def token(self) -> str | None:
        """Current bearer token, None when anonymous or not negotiated."""
        return self._token if isinstance(self._token, str) else None

    @property
    def watch_id(self) -> str | None:
        return self._watch_id

    @property
    def watches(self) -> dict[str, WatchRecord]:
        """Snapshot of the subscribed entities keyed by id."""
        return dict(self._watches)

    # -------------------------------------------------------------------------
    # Public API: Callbacks
    # -------------------------------------------------------------------------

    def on_state_changed(self, callback: Callable[[str], None]) -> None:
        """Register callback for connection state changes.

        Callback receives state: "closed", "open", "watching"
        """
        self._state_callback = callback

    def on_watch_update(self, callback: WatchUpdateCallback) -> None:
        """Register callback receiving (session, grid) for every watch result."""
        self._watch_callback = callback

    # -------------------------------------------------------------------------
    # Public API: Requests
    # -------------------------------------------------------------------------

    async def request(self, req: HaystackRequest) -> HaystackResponse:
        """Send one operation and decode the answer.

        A 403 on an authenticated session triggers re-authentication and a
        single retry with the new token.

        Raises:
            SessionError: If the session is closed
            HaystackResponseError: If the server answers with a non-200 status
            TransportError: If the request could not be sent
            GridError: If the response body is not a grid
        """
        if not self.is_open:
            raise SessionError("Session is closed")
        return await self._request(self._prepare(req), retry=True)

    # -------------------------------------------------------------------------
    # Public API: Watches
    # -------------------------------------------------------------------------

    async def subscribe(
        self,
        ids: Iterable[str],
        callback: WatchCallback | None = None,
        *,
        columns: Iterable[str] | None = None,
    ) -> HaystackResponse | None:
        """Add entities to the session watch, opening it on first use.

        The first values arrive inline and are dispatched like poll results.
        Failures are counted and logged, never raised.

        Args:
            ids: Entity ids, with or without the leading ``@``
            callback: Called with (record, grid, row_index) for rows of these ids
            columns: Restrict the columns delivered to callbacks (``id`` is kept)

        Returns:
            The watchSub response, None when nothing was sent or the call failed
        """
        if not self.is_open:
            raise SessionError("Session is closed")

        if columns is not None:
            requested = tuple(columns) or None
            if requested != self._watch_columns:
                self._watch_columns = requested
                self._refresh_pending = True

        entity_ids = [normalize_id(entity_id) for entity_id in ids]
        if not entity_ids:
            return None

        added = [entity_id for entity_id in entity_ids if entity_id not in self._watches]
        for entity_id in entity_ids:
            record = self._watches.get(entity_id)
            if record is None:
                self._watches[entity_id] = WatchRecord(entity_id, callback)
            elif callback is not None:
                record.callback = callback
        if added:
            self._refresh_pending = True

        try:
            return await self._watch_sub(entity_ids)
        except HaystackClientError as err:
            for entity_id in added:
                self._watches.pop(entity_id, None)
            self.counters.errors += 1
            self._logger.error("[%s] Subscribe failed: %s", self.uri, err)
            return None

    async def unsubscribe(self, ids: Iterable[str] | None = None) -> HaystackResponse | None:
        """Remove entities from the watch, or close it when ``ids`` is omitted.

        Failures are counted and logged, never raised.

        Raises:
            SessionError: If no watch is open
        """
        entity_ids = None if ids is None else [normalize_id(entity_id) for entity_id in ids]
        if entity_ids is not None and not entity_ids:
            return None
        if self._watch_id is None:
            raise SessionError("No active watch")
        return await self._unsubscribe(entity_ids, retry=True)

    async def _unsubscribe(
        self, entity_ids: list[str] | None, *, retry: bool
    ) -> HaystackResponse | None:
        grid = Grid()
        grid.set_meta("watchId", self._watch_id)
        if entity_ids is None:
            grid.set_meta("close")
            entity_ids = list(self._watches)
        else:
            for entity_id in entity_ids:
                grid.add("id", Ref(entity_id))

        try:
            res = await self._request(
                self._prepare(HaystackRequest(op=OP_WATCH_UNSUB, grid=grid)), retry=retry
            )
            if res is NOOP_RESPONSE:
                return res
            if res.error is not None:
                raise GridError(res.error)
        except HaystackClientError as err:
            self.counters.errors += 1
            self._logger.error("[%s] Unsubscribe failed: %s", self.uri, err)
            return None

        for entity_id in entity_ids:
            self._watches.pop(entity_id, None)
        self._refresh_pending = True

        if not self._watches:
            self._logger.info("[%s] Watch %s closed", self.uri, self._watch_id)
            self._stop_poll_timer()
            self._watch_id = None
            self._set_state("open")
        return res

    async def poll(self) -> HaystackResponse | None:
        """Poll the watch for changes and dispatch them.

        Failures are counted and logged, never raised.

        Raises:
            SessionError: If no watch is open
        """
        if self._watch_id is None:
            raise SessionError("No active watch")

        grid = Grid()
        grid.set_meta("watchId", self._watch_id)
        refresh = self._refresh_pending
        if refresh:
            grid.set_meta("refresh")

        self.counters.polls += 1
        try:
            res = await self._request(
                self._prepare(HaystackRequest(op=OP_WATCH_POLL, grid=grid)), retry=True
            )
            if res is NOOP_RESPONSE:
                return res
            if res.error is not None:
                raise GridError(res.error)
        except HaystackClientError as err:
            self.counters.errors += 1
            self._logger.error("[%s] Poll failed: %s", self.uri, err)
            return None

        if refresh:
            self._refresh_pending = False
        if res.grid is not None:
            await self._dispatch(res.grid)
        return res

    # -------------------------------------------------------------------------
    # Internal: Connection State Machine
    # -------------------------------------------------------------------------

    def _set_state(self, state: str) -> None:
        """Update connection state and notify callback."""
        if self._connection_state != state:
            self._logger.debug(
                "[%s] State: %s → %s", self.uri, self._connection_state, state
            )
            self._connection_state = state
            if self._state_callback:
                self._state_callback(state)

    async def _open(self, *, reauthenticate: bool = False) -> None:
        self.uri = self.uri or DEFAULT_URI
        if reauthenticate or self._token is _UNSET:
            self._token = await self._authenticator.authenticate(self.uri)
        self._set_state("open")
        self._logger.info(
            "[%s] Session open (%s)",
            self.uri,
            "authenticated" if isinstance(self._token, str) else "anonymous",
        )

    async def _recover(self, rejected: str) -> None:
        """Re-authenticate after the server rejected ``rejected``.

        Single-flight: callers that queued behind a finished recovery find a
        fresh token and return without another handshake. The rejected token
        stays in place until the new one arrives.
        """
        async with self._recovery_lock:
            if self._token != rejected:
                return

            self._stop_poll_timer()
            self._watch_id = None
            await self._open(reauthenticate=True)

            if self._watches:
                self._logger.info("[%s] Resubscribing %d ids", self.uri, len(self._watches))
                try:
                    await self._watch_sub(list(self._watches), retry=False)
                except HaystackClientError as err:
                    self.counters.errors += 1
                    self._logger.error("[%s] Resubscribe failed: %s", self.uri, err)

    # -------------------------------------------------------------------------
    # Internal: Requests
    # -------------------------------------------------------------------------

    def _prepare(self, req: HaystackRequest) -> HaystackRequest:
        """Fill request defaults from the session."""
        content = req.content or self.content
        return replace(
            req,
            op=req.op or OP_ABOUT,
            method=(req.method or DEFAULT_METHOD).upper(),
            content=content,
            accept=req.accept or self.accept or content,
            version=req.version or self.version,
        )

    async def _request(self, req: HaystackRequest, *, retry: bool) -> HaystackResponse:
        token = self._token
        res = await self._send(req, token)

        if (
            res.status == S_FORBIDDEN
            and retry
            and isinstance(token, str)
            and req.op != OP_CLOSE
        ):
            self._logger.warning("[%s] Token rejected on %s, re-authenticating", self.uri, req.op)
            await self._recover(token)
            if req.op in WATCH_OPS:
                return NOOP_RESPONSE
            return await self._request(req, retry=False)

        if res.status != S_OK:
            raise HaystackResponseError(res.status, f"Request failed: {res.reason}")

        return self._decode(req, res)

    async def _send(self, req: HaystackRequest, token: Any) -> HttpResponse:
        op = req.op or OP_ABOUT
        content = req.content or self.content
        if req.method == "GET":
            url = build_url(self.uri or DEFAULT_URI, op, to_query(req.grid))
            body = None
        elif req.method == "POST":
            url = build_url(self.uri or DEFAULT_URI, op)
            body = get_codec(content).encode(req.grid, req.version)
        else:
            raise ProtocolError(f"Unsupported method: {req.method}")

        headers = {"Content-Type": content, "Accept": req.accept or content}
        if isinstance(token, str):
            headers["Authorization"] = build_auth_bearer(token)

        return await self._transport.send(req.method, url, headers, body)

    def _decode(self, req: HaystackRequest, res: HttpResponse) -> HaystackResponse:
        content = res.header("content-type") or req.accept or self.content
        if req.raw:
            return HaystackResponse(res.status, content, res.text)

        grid, error = get_codec(content).decode(res.text)
        if error is not None:
            self._logger.debug("[%s] Server error on %s: %s", self.uri, req.op, error)
        return HaystackResponse(res.status, content, res.text, error, grid)

    # -------------------------------------------------------------------------
    # Internal: Watch
    # -------------------------------------------------------------------------

    async def _watch_sub(
        self, entity_ids: list[str], *, retry: bool = True
    ) -> HaystackResponse:
        grid = Grid()
        if self._watch_id is None:
            grid.set_meta("watchDis", self.watch_name)
            grid.set_meta("lease", Number(self.lease, "ms"))
        else:
            grid.set_meta("watchId", self._watch_id)
        for entity_id in entity_ids:
            grid.add("id", Ref(entity_id))

        res = await self._request(
            self._prepare(HaystackRequest(op=OP_WATCH_SUB, grid=grid)), retry=retry
        )
        if res is NOOP_RESPONSE:
            return res
        if res.error is not None:
            raise GridError(res.error)
        if res.grid is None:
            raise SessionError("Watch response carried no grid")

        self._merge_watch(res.grid)
        self._start_poll_timer()
        await self._dispatch(res.grid)
        return res

    def _merge_watch(self, grid: Grid) -> None:
        """Take the watch id and lease the server granted."""
        watch_id = grid.meta.get("watchId")
        if watch_id is not None:
            if self._watch_id is None:
                self._logger.info("[%s] Watch %s opened", self.uri, to_display(watch_id))
            self._watch_id = to_display(watch_id)
        if self._watch_id is None:
            raise SessionError("Server did not return a watch id")

        lease = grid.meta.get("lease")
        if lease is not None:
            try:
                self.lease = parse_duration(to_display(lease))
            except ConfigError:
                self._logger.debug("[%s] Ignoring lease %s", self.uri, lease)

        self._set_state("watching")

    async def _dispatch(self, grid: Grid) -> None:
        """Fan a watch result out to the session and per-id callbacks."""
        rows = grid.row_count()
        self.counters.updates += rows

        if self._watch_columns:
            names = list(self._watch_columns)
            if "id" not in names:
                names.insert(0, "id")
            grid.project(names)

        if self._watch_callback is not None:
            await self._invoke(self._watch_callback, self, grid)

        x = grid.index("id")
        if x is None:
            return
        for y in range(rows):
            entity_id = normalize_id(grid.value(x, y).split(" ", 1)[0])
            record = self._watches.get(entity_id)
            if record is not None and record.callback is not None:
                await self._invoke(record.callback, record, grid, y)

    async def _invoke(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as err:
            self._logger.exception("[%s] Watch callback error: %s", self.uri, err)

    # -------------------------------------------------------------------------
    # Internal: Poll Timer
    # -------------------------------------------------------------------------

    def _start_poll_timer(self) -> None:
        if self._poll_task is None:
            self._poll_task = asyncio.create_task(self._poll_loop())

    def _stop_poll_timer(self) -> None:
        """Stop polling; called from the poll task itself it only detaches."""
        task, self._poll_task = self._poll_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _poll_loop(self) -> None:
        """Poll loop - sleep, poll, repeat until the timer is stopped."""
        me = asyncio.current_task()
        try:
            while self._poll_task is me and self._watch_id is not None:
                await asyncio.sleep(self.poll_interval / 1000)
                if self._poll_task is not me or self._watch_id is None:
                    break
                try:
                    await self.poll()
                except Exception as err:
                    self.counters.errors += 1
                    self._logger.exception("[%s] Poll timer error: %s", self.uri, err)
        except asyncio.CancelledError:
            self._logger.debug("[%s] Poll timer cancelled", self.uri)
            raise

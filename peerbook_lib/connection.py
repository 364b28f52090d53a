"""
PeerBook registry connection.

Responsibilities:
- Own the session handle (admin command transport) and the push socket handle.
- Establish the session, confirm the registry identifier, then open the push socket.
- Queue outbound push messages while the socket is down and flush them on open.

Non-responsibilities (explicit):
- Operator interaction (registration.py / verification.py).
- Entitlement policy (subscription.py).

Handles are only replaced inside _transition(). Every transport callback is
bound to the handle it was registered on and turns into a no-op once that
handle has been replaced, in addition to close() clearing callbacks before it
closes anything.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Coroutine, Optional

from .admin import AdminChannel
from .const import (
    ADMIN_PING,
    ERROR_CODE_THRESHOLD,
    UID_SENTINEL,
    UID_UNSET,
)
from .errors import PeerbookError, ProtocolError, TransportFailure, Unregistered
from .interfaces import (
    SESSION_CONNECTED,
    SESSION_FAILED,
    PushSocket,
    PushSocketFactory,
    SessionFactory,
    SessionTransport,
    SubscriptionProvider,
)
from .outbound import OutboundQueue
from .push import aiohttp_socket_factory
from .status import StatusIndicator
from .types import ClientConfig, ConnectionState, PushStatus, SocketState

UpdateCallback = Callable[[dict[str, Any]], None]

_KEEP: Any = object()


def _resolve(fut: asyncio.Future[None]) -> None:
    if not fut.done():
        fut.set_result(None)


def _reject(fut: asyncio.Future[None], exc: BaseException) -> None:
    if not fut.done():
        fut.set_exception(exc)


def _is_error_code(value: object) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and value >= ERROR_CODE_THRESHOLD
    )


class PeerbookConnection:
    """
    Connection state machine for the registry.

    Typical usage:
        conn = PeerbookConnection(cfg, fingerprint=fp, session_factory=make_session)
        conn.on_update = handle_update
        await conn.connect(token)
        conn.send({"type": "peer_update", ...})
        conn.close()
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        fingerprint: str,
        session_factory: SessionFactory,
        socket_factory: Optional[PushSocketFactory] = None,
        subscription: Optional[SubscriptionProvider] = None,
        status: Optional[StatusIndicator] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._config = config or ClientConfig()
        self._log = logger or logging.getLogger(self._config.logger_name or __name__)
        self.fingerprint = fingerprint
        self._session_factory = session_factory
        self._socket_factory = socket_factory or aiohttp_socket_factory()
        self._subscription = subscription
        self.status = status or StatusIndicator()

        self.headers: dict[str, str] = {}
        self.uid = UID_UNSET
        self.on_update: Optional[UpdateCallback] = None
        self.failure: object | None = None

        self._state = ConnectionState.IDLE
        self._session: Optional[SessionTransport] = None
        self._ws: Optional[PushSocket] = None
        self._pending = OutboundQueue(
            capacity=self._config.outbound_capacity,
            flush_delay_s=self._config.flush_delay_s,
            logger=self._log,
        )
        self._admin = AdminChannel(
            self._ensure_session,
            new_waiter=self._new_channel_waiter,
            priority=self._config.channel_priority,
            cols=self._config.channel_cols,
            rows=self._config.channel_rows,
            logger=self._log,
        )
        self._waiters: set[asyncio.Future[None]] = set()
        self._channel_waiters: set[asyncio.Future[None]] = set()
        self._push_ready: Optional[asyncio.Future[None]] = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._reconnect_attempts = 0

    # --------------------------
    # Introspection
    # --------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def session(self) -> Optional[SessionTransport]:
        return self._session

    @property
    def outbound(self) -> OutboundQueue:
        return self._pending

    def is_open(self) -> bool:
        ws = self._ws
        return ws is not None and ws.ready_state is SocketState.OPEN

    def is_registered(self) -> bool:
        return self.uid not in (UID_UNSET, UID_SENTINEL)

    # --------------------------
    # Transitions
    # --------------------------

    def _transition(
        self,
        state: ConnectionState,
        *,
        session: Any = _KEEP,
        ws: Any = _KEEP,
        failure: object | None = None,
    ) -> None:
        if session is not _KEEP:
            self._session = session
        if ws is not _KEEP:
            self._ws = ws
        self.failure = failure if state is ConnectionState.FAILED else None
        if state is not self._state:
            self._log.debug("PeerBook connection %s -> %s", self._state.value, state.value)
            self._state = state

    def _settled_state(self) -> ConnectionState:
        if self._session is None:
            return ConnectionState.IDLE
        if self.is_registered():
            return ConnectionState.IDENTIFIED
        return ConnectionState.SESSION_OPEN

    def _new_waiter(self) -> asyncio.Future[None]:
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.add(fut)
        fut.add_done_callback(self._waiters.discard)
        return fut

    def _new_channel_waiter(self, session: SessionTransport) -> asyncio.Future[None]:
        fut = self._new_waiter()
        if session is not self._session:
            _reject(fut, TransportFailure("session closed"))
            return fut
        self._channel_waiters.add(fut)
        fut.add_done_callback(self._channel_waiters.discard)
        return fut

    def _reject_channels(self, reason: str) -> None:
        for fut in list(self._channel_waiters):
            _reject(fut, TransportFailure(reason))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # --------------------------
    # Session lifecycle
    # --------------------------

    async def connect(self, token: Optional[str] = None) -> None:
        """
        Establish the session and the push socket.

        Returns immediately if a session already exists. Raises Unregistered
        while the registry identifier is the sentinel.
        """
        if self._session is not None:
            if self.uid == UID_SENTINEL:
                raise Unregistered()
            return

        if token:
            self.headers["Authorization"] = f"Bearer {token}"
        try:
            session = self._session_factory(self._config.session_url, dict(self.headers))
        except Exception as e:
            self._log.warning("Failed to create PeerBook session: %s", e)
            raise TransportFailure(e) from e
        done = self._new_waiter()

        def _on_state_change(state: str, failure: object | None = None) -> None:
            self._on_session_state(session, done, state, failure)

        session.on_state_change = _on_state_change
        self._transition(ConnectionState.SESSION_CONNECTING, session=session)
        self._log.info("Connecting to PeerBook at %s", self._config.session_url)
        try:
            session.connect()
        except Exception as e:
            self._fail_session(session, e)
            _reject(done, TransportFailure(e))
        await done

    def _on_session_state(
        self,
        session: SessionTransport,
        done: asyncio.Future[None],
        state: str,
        failure: object | None,
    ) -> None:
        if session is not self._session:
            self._log.debug("Ignoring session state %r from a replaced session", state)
            return
        if state == SESSION_CONNECTED:
            self._log.info("Connected PB session")
            self._transition(ConnectionState.SESSION_OPEN)
            self._spawn(self._on_session_connected(session, done))
        elif state == SESSION_FAILED:
            self.status.stop_spinner()
            self._log.warning("PB session failed: %s", failure)
            self._fail_session(session, failure)
            if self.uid == UID_SENTINEL:
                _reject(done, Unregistered())
            else:
                _reject(done, TransportFailure(failure))
        else:
            self._log.debug("Ignoring session state %r", state)

    async def _on_session_connected(
        self, session: SessionTransport, done: asyncio.Future[None]
    ) -> None:
        try:
            uid = await self.get_uid()
        except PeerbookError as e:
            self._log.warning("Failed to get user id: %s", e)
            if session is self._session:
                self._fail_session(session, e)
            _reject(done, e if isinstance(e, TransportFailure) else TransportFailure(e))
            return
        if session is not self._session:
            _reject(done, TransportFailure("connection closed"))
            return
        if uid == UID_SENTINEL:
            self._log.info("Registry has no identifier for this device yet")
            _reject(done, Unregistered())
            return

        self._transition(ConnectionState.IDENTIFIED)
        await self._log_in(uid)
        try:
            await self.connect_push()
        except PeerbookError as e:
            _reject(done, e)
            return
        _resolve(done)

    async def _log_in(self, uid: str) -> None:
        if self._subscription is None:
            return
        try:
            await self._subscription.log_in(uid)
        except Exception as e:
            self._log.warning("Subscription login failed for %s: %s", uid, e)

    def _fail_session(self, session: SessionTransport, failure: object | None) -> None:
        session.on_state_change = None
        try:
            session.close()
        except Exception as e:
            self._log.debug("session close failed: %s", e)
        self._transition(ConnectionState.FAILED, session=None, failure=failure)
        self._reject_channels("session failed")

    async def _ensure_session(self) -> SessionTransport:
        if self._session is None:
            self._log.debug("Admin command with no session")
            try:
                await self.connect()
            except Unregistered:
                # The session stays up for pairing commands.
                pass
            except PeerbookError as e:
                self._log.warning("Failed to connect to PeerBook: %s", e)
                raise TransportFailure("Failed to connect") from e
        session = self._session
        if session is None:
            raise TransportFailure("Failed to connect")
        return session

    # --------------------------
    # Admin commands
    # --------------------------

    async def admin_command(self, command: str, *args: str) -> str:
        return await self._admin.execute(command, *args)

    async def get_uid(self) -> str:
        """Return the registry identifier, asking the registry when unknown."""
        if self.is_registered():
            return self.uid
        session = self._session
        if session is None:
            raise TransportFailure("No session")
        uid = (await self._admin.execute(ADMIN_PING)).strip()
        if not uid:
            raise ProtocolError("Empty reply to ping")
        if session is self._session:
            self.uid = uid
        return uid

    def adopt_uid(self, uid: str) -> bool:
        """Record an identifier issued by registration; confirmed ones never change."""
        if self.is_registered():
            if uid != self.uid:
                self._log.warning("Ignoring identifier %s; already registered as %s", uid, self.uid)
            return uid == self.uid
        self.uid = uid
        if self._session is not None and self._state is ConnectionState.SESSION_OPEN:
            self._transition(self._settled_state())
        return True

    # --------------------------
    # Push socket
    # --------------------------

    async def connect_push(self) -> None:
        """Open the push socket and wait for the registry's first message."""
        ws = self._ws
        if ws is not None:
            if self.is_open():
                return
            self._discard_socket(ws)
            self._pending.cancel_flush()
            self._transition(self._state, ws=None)
            if self._push_ready is not None:
                _reject(self._push_ready, TransportFailure("push socket replaced"))

        url = self._config.push_url(self.fingerprint)
        try:
            ws = self._socket_factory(url)
        except Exception as e:
            self._log.warning("Failed to create push socket: %s", e)
            raise TransportFailure(e) from e
        ready = self._new_waiter()
        self._push_ready = ready
        first_message = True

        def _on_open() -> None:
            if ws is not self._ws:
                return
            self._log.debug("peerbook ws open")
            self._pending.schedule_flush(ws.send)

        def _on_message(data: str) -> None:
            nonlocal first_message
            if ws is not self._ws:
                return
            try:
                message = json.loads(data)
            except ValueError:
                self._log.warning("peerbook ws sent invalid JSON: %r", data)
                message = None
            if first_message:
                # The registry's first message acknowledges the connection.
                first_message = False
                self.status.stop_spinner()
                self._reconnect_attempts = 0
                self._transition(ConnectionState.ACTIVE)
                _resolve(ready)
            if not isinstance(message, dict):
                return
            self._handle_push_message(message)

        def _on_error(err: BaseException | None) -> None:
            if ws is not self._ws:
                return
            self._log.warning("peerbook ws error: %s", err)
            self._discard_socket(ws)
            self._pending.cancel_flush()
            self._transition(ConnectionState.FAILED, ws=None, failure=err)
            self.status.stop_spinner()
            self.status.set_status(PushStatus.ERROR)
            _reject(ready, TransportFailure(err or "push socket error"))
            self._maybe_schedule_reconnect()

        def _on_close() -> None:
            if ws is not self._ws:
                return
            self._log.info("peerbook ws closed")
            self._detach_socket(ws)
            self._pending.cancel_flush()
            self._transition(self._settled_state(), ws=None)
            self.status.stop_spinner()
            if self.status.status is not PushStatus.ERROR:
                self.status.set_status(PushStatus.CLOSED)
            _reject(ready, TransportFailure("push socket closed"))
            self._maybe_schedule_reconnect()

        ws.on_open = _on_open
        ws.on_message = _on_message
        ws.on_error = _on_error
        ws.on_close = _on_close
        self._transition(
            ConnectionState.IDENTIFIED if self._session is not None else self._state,
            ws=ws,
        )
        self.status.start_spinner()
        self._log.debug("peerbook connecting push socket to %s", url)
        try:
            ws.connect()
        except Exception as e:
            _on_error(e)
        await ready

    def _handle_push_message(self, message: dict[str, Any]) -> None:
        code = message.get("code")
        if _is_error_code(code):
            self._log.warning("peerbook push got code %s", code)
            self.status.stop_spinner()
            self.status.set_status(PushStatus.ERROR)
            return
        if self.on_update is None:
            self._log.debug("got push message but no on_update: %s", message)
            return
        try:
            self.on_update(message)
        except Exception:
            self._log.warning("on_update callback failed", exc_info=True)

    def _detach_socket(self, ws: PushSocket) -> None:
        ws.on_open = None
        ws.on_message = None
        ws.on_error = None
        ws.on_close = None

    def _discard_socket(self, ws: PushSocket) -> None:
        self._detach_socket(ws)
        try:
            ws.close()
        except Exception as e:
            self._log.debug("ws close failed: %s", e)

    def send(self, message: Any) -> None:
        """Send over the push socket, or queue until it opens. Never raises."""
        try:
            data = json.dumps(message)
        except (TypeError, ValueError) as e:
            self._log.warning("Dropping unserializable push message: %s", e)
            return
        ws = self._ws
        if ws is not None and ws.ready_state is SocketState.OPEN:
            try:
                ws.send(data)
                return
            except Exception as e:
                self._log.warning("push send failed, queueing: %s", e)
        else:
            self._log.debug(
                "peerbook send called with state %s",
                ws.ready_state.name if ws is not None else SocketState.CLOSED.name,
            )
        self._pending.enqueue(data)

    # --------------------------
    # Push reconnect (opt-in)
    # --------------------------

    def _maybe_schedule_reconnect(self) -> None:
        if not self._config.push_reconnect:
            return
        if self._session is None or not self.is_registered():
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._async_reconnect_loop()
        )

    async def _async_reconnect_loop(self) -> None:
        """Reconnect the push socket with exponential backoff until success or close()."""
        while self._session is not None:
            self._reconnect_attempts += 1
            delay = min(self._config.reconnect_max_delay_s, 2**self._reconnect_attempts)
            self._log.debug(
                "Push reconnect attempt %s sleeping for %s seconds",
                self._reconnect_attempts,
                delay,
            )
            await asyncio.sleep(delay)
            if self._session is None:
                return
            try:
                await self.connect_push()
            except PeerbookError as e:
                self._log.debug("Push reconnect attempt failed: %s", e)
                continue
            self._reconnect_attempts = 0
            return

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task is None:
            return
        if not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None
        self._reconnect_attempts = 0

    # --------------------------
    # Teardown
    # --------------------------

    def close(self) -> None:
        """
        Close both transports. Safe to call multiple times.

        Callbacks are cleared before each transport is closed so nothing
        fired afterwards reaches this object.
        """
        self._cancel_reconnect()
        self._pending.cancel_flush()
        ws = self._ws
        session = self._session
        if ws is not None:
            self._discard_socket(ws)
        if session is not None:
            session.on_state_change = None
            try:
                session.close()
            except Exception as e:
                self._log.debug("session close failed: %s", e)
        self._transition(ConnectionState.IDLE, session=None, ws=None)
        self.uid = UID_UNSET
        for task in list(self._tasks):
            task.cancel()
        for fut in list(self._waiters):
            _reject(fut, TransportFailure("connection closed"))
        if ws is not None or session is not None:
            self._log.info("PeerBook connection closed")

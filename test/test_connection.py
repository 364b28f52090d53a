import asyncio
import json

import pytest

from fakes import FakeSessionFactory, FakeSocketFactory, FakeSubscription
from peerbook_lib.connection import PeerbookConnection
from peerbook_lib.errors import ProtocolError, TransportFailure, Unregistered
from peerbook_lib.types import ClientConfig, ConnectionState, PushStatus, SocketState

READY = {"type": "ready"}


def _make(
    replies=None,
    *,
    scripts=None,
    auto_state="connected",
    ack=READY,
    auto_open=True,
    config=None,
    subscription=None,
):
    sessions = FakeSessionFactory(
        replies={"ping": "uid-1"} if replies is None else replies,
        scripts=scripts,
        auto_state=auto_state,
    )
    sockets = FakeSocketFactory(ack=ack, auto_open=auto_open)
    conn = PeerbookConnection(
        config or ClientConfig(flush_delay_s=0),
        fingerprint="FP",
        session_factory=sessions,
        socket_factory=sockets,
        subscription=subscription,
    )
    return conn, sessions, sockets


async def _settle(times: int = 5) -> None:
    for _ in range(times):
        await asyncio.sleep(0.01)


# --------------------------
# connect()
# --------------------------


@pytest.mark.asyncio
async def test_connect_opens_session_confirms_uid_and_opens_push():
    subscription = FakeSubscription()
    conn, sessions, sockets = _make(subscription=subscription)

    await conn.connect("tok")

    session = sessions.sessions[0]
    assert session.url == "https://api.peerbook.io/we"
    assert session.headers == {"Authorization": "Bearer tok"}
    assert session.commands == [["ping"]]
    assert sockets.sockets[0].url == "wss://api.peerbook.io/ws?fp=FP"
    assert conn.uid == "uid-1"
    assert subscription.log_ins == ["uid-1"]
    assert conn.state is ConnectionState.ACTIVE
    assert conn.is_open() is True
    assert conn.status.status is PushStatus.OPEN
    assert conn.status.spinning is False


@pytest.mark.asyncio
async def test_insecure_config_uses_plain_schemes():
    conn, sessions, sockets = _make(config=ClientConfig(host="pb.local:17777", insecure=True))

    await conn.connect()

    assert sessions.sessions[0].url == "http://pb.local:17777/we"
    assert sockets.sockets[0].url == "ws://pb.local:17777/ws?fp=FP"


@pytest.mark.asyncio
async def test_connect_never_creates_a_second_session():
    conn, sessions, _ = _make()

    await asyncio.gather(conn.connect(), conn.connect(), conn.connect())
    for _ in range(3):
        await conn.connect()

    assert len(sessions.sessions) == 1
    assert sessions.sessions[0].connect_calls == 1


@pytest.mark.asyncio
async def test_connect_with_sentinel_uid_is_unregistered():
    conn, sessions, sockets = _make({"ping": "TBD"})

    with pytest.raises(Unregistered):
        await conn.connect()

    assert conn.session is sessions.sessions[0]
    assert conn.state is ConnectionState.SESSION_OPEN
    assert sockets.sockets == []

    with pytest.raises(Unregistered):
        await conn.connect()
    assert len(sessions.sessions) == 1


@pytest.mark.asyncio
async def test_failed_session_with_sentinel_uid_is_unregistered():
    conn, sessions, _ = _make(auto_state="failed")
    conn.uid = "TBD"

    with pytest.raises(Unregistered):
        await conn.connect()

    assert conn.session is None
    assert sessions.sessions[0].closed is True
    assert sessions.sessions[0].on_state_change is None
    assert conn.state is ConnectionState.FAILED


@pytest.mark.asyncio
async def test_failed_session_rejects_with_failure_detail():
    conn, sessions, _ = _make(auto_state=None)

    task = asyncio.create_task(conn.connect())
    await asyncio.sleep(0)
    sessions.sessions[0].fire("failed", "ice failed")

    with pytest.raises(TransportFailure) as exc_info:
        await task
    assert exc_info.value.detail == "ice failed"
    assert conn.failure == "ice failed"
    assert conn.session is None

    # A later connect starts over with a new session.
    sessions.session_kwargs["auto_state"] = "connected"
    await conn.connect()
    assert len(sessions.sessions) == 2
    assert conn.is_open()


@pytest.mark.asyncio
async def test_session_connect_raising_is_transport_failure():
    sessions = FakeSessionFactory(connect_error=OSError("no route"))
    conn = PeerbookConnection(
        ClientConfig(), fingerprint="FP", session_factory=sessions, socket_factory=FakeSocketFactory()
    )

    with pytest.raises(TransportFailure):
        await conn.connect()
    assert conn.session is None


@pytest.mark.asyncio
async def test_uid_query_failure_tears_down_session():
    conn, sessions, sockets = _make({"ping": RuntimeError("channel refused")})

    with pytest.raises(TransportFailure):
        await conn.connect()

    assert conn.session is None
    assert sessions.sessions[0].closed is True
    assert sockets.sockets == []


@pytest.mark.asyncio
async def test_token_header_is_fixed_per_session():
    conn, sessions, _ = _make()

    await conn.connect("first")
    conn.headers["Authorization"] = "Bearer changed"

    assert sessions.sessions[0].headers == {"Authorization": "Bearer first"}


# --------------------------
# close()
# --------------------------


def test_close_on_never_connected_instance_is_noop():
    conn, _, _ = _make()

    conn.close()
    conn.close()

    assert conn.state is ConnectionState.IDLE
    assert conn.session is None
    assert conn.is_open() is False


@pytest.mark.asyncio
async def test_close_detaches_callbacks_before_closing_transports():
    conn, sessions, sockets = _make()
    updates = []
    conn.on_update = updates.append
    await conn.connect()
    updates.clear()
    session, sock = sessions.sessions[0], sockets.sockets[0]
    stale_state_cb = session.on_state_change
    stale_message_cb = sock.on_message
    stale_close_cb = sock.on_close

    conn.close()
    conn.close()

    assert session.on_state_change is None
    assert (sock.on_open, sock.on_message, sock.on_error, sock.on_close) == (None, None, None, None)
    assert session.closed is True
    assert sock.close_calls == 1

    # Drive the old transports by hand; nothing may reach the connection.
    sock.message({"peers": []})
    session.fire("failed", "late")
    stale_message_cb(json.dumps({"peers": []}))
    stale_close_cb()
    stale_state_cb("failed", "late")
    stale_state_cb("connected")
    await _settle()

    assert updates == []
    assert conn.state is ConnectionState.IDLE
    assert conn.session is None
    assert conn.is_open() is False
    assert conn.uid == ""
    assert len(sockets.sockets) == 1


@pytest.mark.asyncio
async def test_close_during_connect_makes_old_session_inert():
    conn, sessions, sockets = _make(auto_state=None)

    task = asyncio.create_task(conn.connect())
    await asyncio.sleep(0)
    stale_state_cb = sessions.sessions[0].on_state_change
    conn.close()

    with pytest.raises(TransportFailure):
        await task

    stale_state_cb("connected")
    await _settle()
    assert sessions.sessions[0].commands == []
    assert sockets.sockets == []
    assert conn.state is ConnectionState.IDLE


@pytest.mark.asyncio
async def test_close_during_uid_query_does_not_adopt_old_reply():
    conn, sessions, sockets = _make({})

    task = asyncio.create_task(conn.connect())
    await _settle(2)
    assert sessions.sessions[0].commands == [["ping"]]
    conn.close()

    with pytest.raises(TransportFailure):
        await task
    await _settle(2)
    assert conn.uid == ""
    assert sockets.sockets == []


# --------------------------
# is_open() / push socket
# --------------------------


@pytest.mark.asyncio
async def test_is_open_tracks_socket_ready_state():
    conn, _, sockets = _make(auto_open=False)
    assert conn.is_open() is False

    task = asyncio.create_task(conn.connect_push())
    await asyncio.sleep(0)
    sock = sockets.sockets[0]
    assert sock.ready_state is SocketState.CONNECTING
    assert conn.is_open() is False

    sock.open()
    assert conn.is_open() is True

    sock.message(READY)
    await task
    assert conn.is_open() is True


@pytest.mark.asyncio
async def test_is_open_false_with_only_session():
    conn, _, _ = _make({"ping": "TBD"})

    with pytest.raises(Unregistered):
        await conn.connect()

    assert conn.session is not None
    assert conn.is_open() is False


@pytest.mark.asyncio
async def test_connect_push_is_noop_when_open():
    conn, _, sockets = _make()
    await conn.connect()

    await conn.connect_push()

    assert len(sockets.sockets) == 1


@pytest.mark.asyncio
async def test_connect_push_replaces_unusable_socket():
    conn, _, sockets = _make(auto_open=False)

    first = asyncio.create_task(conn.connect_push())
    await asyncio.sleep(0)
    stale = sockets.sockets[0]
    second = asyncio.create_task(conn.connect_push())
    await asyncio.sleep(0)

    assert stale.on_message is None and stale.on_close is None
    assert stale.close_calls == 1
    with pytest.raises(TransportFailure):
        await first

    fresh = sockets.sockets[1]
    fresh.open()
    fresh.message(READY)
    await second
    assert conn.is_open()


@pytest.mark.asyncio
async def test_first_message_acknowledges_and_is_forwarded():
    conn, _, _ = _make()
    updates = []
    conn.on_update = updates.append

    await conn.connect()

    assert updates == [READY]


@pytest.mark.asyncio
async def test_push_messages_are_forwarded_and_errors_discarded():
    conn, _, sockets = _make()
    await conn.connect()
    updates = []
    conn.on_update = updates.append
    sock = sockets.sockets[0]

    sock.message({"code": 401, "text": "unauthorized"})
    assert updates == []
    assert conn.status.status is PushStatus.ERROR

    sock.message({"peers": [{"name": "srv", "kind": "webexec"}]})
    sock.message("{not json")
    sock.message([1, 2, 3])
    assert updates == [{"peers": [{"name": "srv", "kind": "webexec"}]}]
    assert conn.is_open()


@pytest.mark.asyncio
async def test_push_message_without_callback_is_dropped():
    conn, _, sockets = _make()
    await conn.connect()

    sockets.sockets[0].message({"peers": []})

    assert conn.is_open()


@pytest.mark.asyncio
async def test_failing_update_callback_does_not_break_socket():
    conn, _, sockets = _make()
    await conn.connect()

    def _boom(message):
        raise ValueError("bad handler")

    conn.on_update = _boom
    sockets.sockets[0].message({"peers": []})

    assert conn.is_open()


@pytest.mark.asyncio
async def test_socket_error_before_ready_rejects_connect_push():
    conn, _, sockets = _make(auto_open=False)

    task = asyncio.create_task(conn.connect_push())
    await asyncio.sleep(0)
    sock = sockets.sockets[0]
    sock.error(ConnectionError("boom"))

    with pytest.raises(TransportFailure):
        await task
    assert conn.is_open() is False
    assert conn.state is ConnectionState.FAILED
    assert conn.status.status is PushStatus.ERROR
    assert conn.status.spinning is False
    assert sock.on_message is None


@pytest.mark.asyncio
async def test_socket_close_shows_closed_status():
    conn, _, sockets = _make()
    await conn.connect()

    sockets.sockets[0].remote_close()

    assert conn.is_open() is False
    assert conn.status.status is PushStatus.CLOSED
    assert conn.state is ConnectionState.IDENTIFIED
    assert conn.session is not None


@pytest.mark.asyncio
async def test_socket_close_keeps_error_status():
    conn, _, sockets = _make()
    await conn.connect()
    sock = sockets.sockets[0]

    sock.message({"code": 500})
    sock.remote_close()

    assert conn.status.status is PushStatus.ERROR


@pytest.mark.asyncio
async def test_socket_close_before_ready_rejects_connect_push():
    conn, _, sockets = _make(auto_open=False)

    task = asyncio.create_task(conn.connect_push())
    await asyncio.sleep(0)
    sockets.sockets[0].open()
    sockets.sockets[0].remote_close()

    with pytest.raises(TransportFailure):
        await task


# --------------------------
# send() / outbound queue
# --------------------------


@pytest.mark.asyncio
async def test_send_while_closed_queues_and_flushes_once_in_order():
    conn, _, sockets = _make(auto_open=False)
    for n in range(3):
        conn.send({"n": n})
    assert len(conn.outbound) == 3

    task = asyncio.create_task(conn.connect_push())
    await asyncio.sleep(0)
    sock = sockets.sockets[0]
    sock.open()
    await _settle(1)

    assert [json.loads(data) for data in sock.sent] == [{"n": 0}, {"n": 1}, {"n": 2}]
    assert len(conn.outbound) == 0

    sock.on_open()
    await _settle(1)
    assert len(sock.sent) == 3

    sock.message(READY)
    await task


@pytest.mark.asyncio
async def test_send_when_open_transmits_immediately():
    conn, _, sockets = _make()
    await conn.connect()

    conn.send({"type": "peer_update", "online": True})

    assert sockets.sockets[0].sent == [json.dumps({"type": "peer_update", "online": True})]
    assert len(conn.outbound) == 0


@pytest.mark.asyncio
async def test_send_never_raises():
    conn, _, _ = _make()

    conn.send(object())
    conn.send({"ok": True})

    assert conn.outbound.pending() == [json.dumps({"ok": True})]


@pytest.mark.asyncio
async def test_outbound_queue_is_bounded():
    conn, _, _ = _make(config=ClientConfig(outbound_capacity=2))

    for n in range(4):
        conn.send(n)

    assert conn.outbound.pending() == ["2", "3"]


# --------------------------
# Push reconnect
# --------------------------


@pytest.mark.asyncio
async def test_push_reconnects_after_close_when_enabled():
    config = ClientConfig(flush_delay_s=0, push_reconnect=True, reconnect_max_delay_s=0)
    conn, _, sockets = _make(config=config)
    await conn.connect()

    sockets.sockets[0].remote_close()
    await _settle()

    assert len(sockets.sockets) == 2
    assert conn.is_open()
    assert conn.state is ConnectionState.ACTIVE


@pytest.mark.asyncio
async def test_push_does_not_reconnect_by_default():
    conn, _, sockets = _make()
    await conn.connect()

    sockets.sockets[0].remote_close()
    sockets.sockets[0].message({"code": 503})
    await _settle()

    assert len(sockets.sockets) == 1


@pytest.mark.asyncio
async def test_close_cancels_pending_reconnect():
    config = ClientConfig(flush_delay_s=0, push_reconnect=True, reconnect_max_delay_s=10)
    conn, _, sockets = _make(config=config)
    await conn.connect()

    sockets.sockets[0].remote_close()
    await asyncio.sleep(0)
    conn.close()
    await _settle()

    assert len(sockets.sockets) == 1


# --------------------------
# Admin commands / uid
# --------------------------


@pytest.mark.asyncio
async def test_admin_command_connects_and_runs_while_unregistered():
    conn, sessions, _ = _make({"ping": "TBD", "register": '{"QR": "q", "ID": "u"}'})

    reply = await conn.admin_command("register", "me@example.com", "laptop")

    assert reply == '{"QR": "q", "ID": "u"}'
    assert len(sessions.sessions) == 1
    assert sessions.sessions[0].commands == [["ping"], ["register", "me@example.com", "laptop"]]


@pytest.mark.asyncio
async def test_admin_command_connection_failure_is_transport_failure():
    conn, _, _ = _make(auto_state="failed")

    with pytest.raises(TransportFailure) as exc_info:
        await conn.admin_command("ping")

    assert "Failed to connect" in str(exc_info.value)


@pytest.mark.asyncio
async def test_get_uid_without_session_fails():
    conn, _, _ = _make()

    with pytest.raises(TransportFailure):
        await conn.get_uid()


@pytest.mark.asyncio
async def test_get_uid_empty_reply_is_protocol_error():
    conn, _, _ = _make({"ping": ""})

    with pytest.raises(TransportFailure) as exc_info:
        await conn.connect()

    assert isinstance(exc_info.value.detail, ProtocolError)


@pytest.mark.asyncio
async def test_confirmed_uid_is_not_replaced():
    conn, _, _ = _make()
    await conn.connect()

    assert conn.adopt_uid("someone-else") is False
    assert conn.uid == "uid-1"
    assert await conn.get_uid() == "uid-1"


@pytest.mark.asyncio
async def test_adopt_uid_confirms_unregistered_session():
    conn, _, _ = _make({"ping": "TBD"})
    with pytest.raises(Unregistered):
        await conn.connect()

    assert conn.adopt_uid("uid-9") is True

    assert conn.uid == "uid-9"
    assert conn.state is ConnectionState.IDENTIFIED


# --------------------------
# Teardown while work is in flight
# --------------------------


@pytest.mark.asyncio
async def test_close_rejects_admin_command_in_flight():
    conn, sessions, _ = _make()
    await conn.connect()

    task = asyncio.create_task(conn.admin_command("verify", "FP", "123456"))
    await _settle(1)
    assert sessions.sessions[0].commands[-1] == ["verify", "FP", "123456"]
    conn.close()

    with pytest.raises(TransportFailure):
        await asyncio.wait_for(task, timeout=1)


@pytest.mark.asyncio
async def test_session_failure_rejects_admin_command_in_flight():
    conn, sessions, _ = _make()
    await conn.connect()

    task = asyncio.create_task(conn.admin_command("verify", "FP", "123456"))
    await _settle(1)
    sessions.sessions[0].fire("failed", "ice failed")

    with pytest.raises(TransportFailure):
        await asyncio.wait_for(task, timeout=1)
    assert conn.session is None


@pytest.mark.asyncio
async def test_session_factory_error_is_transport_failure():
    def _broken_factory(url, headers):
        raise OSError("unreachable")

    conn = PeerbookConnection(
        ClientConfig(), fingerprint="FP", session_factory=_broken_factory, socket_factory=FakeSocketFactory()
    )

    with pytest.raises(TransportFailure) as exc_info:
        await conn.connect()

    assert isinstance(exc_info.value.__cause__, OSError)
    assert conn.session is None
    assert conn.state is ConnectionState.IDLE


@pytest.mark.asyncio
async def test_socket_factory_error_is_transport_failure():
    def _broken_factory(url):
        raise OSError("no sockets")

    conn = PeerbookConnection(
        ClientConfig(), fingerprint="FP", session_factory=FakeSessionFactory(), socket_factory=_broken_factory
    )

    with pytest.raises(TransportFailure):
        await conn.connect_push()
    assert conn.is_open() is False


@pytest.mark.asyncio
@pytest.mark.parametrize("failure", ["error", "remote_close"])
async def test_flush_follows_the_socket_that_opened(failure):
    conn, _, sockets = _make(auto_open=False, config=ClientConfig(flush_delay_s=0.05))
    conn.send({"n": 0})
    conn.send({"n": 1})

    first = asyncio.create_task(conn.connect_push())
    await asyncio.sleep(0)
    stale = sockets.sockets[0]
    stale.open()
    getattr(stale, failure)()
    with pytest.raises(TransportFailure):
        await first
    assert conn.outbound.flush_scheduled is False
    assert len(conn.outbound) == 2

    second = asyncio.create_task(conn.connect_push())
    await asyncio.sleep(0)
    fresh = sockets.sockets[1]
    fresh.open()
    await asyncio.sleep(0.1)

    assert stale.sent == []
    assert [json.loads(data) for data in fresh.sent] == [{"n": 0}, {"n": 1}]
    assert len(conn.outbound) == 0

    fresh.message(READY)
    await second


@pytest.mark.asyncio
async def test_replacing_socket_cancels_its_flush():
    conn, _, sockets = _make(auto_open=False, config=ClientConfig(flush_delay_s=0.05))
    conn.send({"n": 0})

    first = asyncio.create_task(conn.connect_push())
    await asyncio.sleep(0)
    sockets.sockets[0].open()
    # A socket that is no longer open gets replaced.
    sockets.sockets[0].state = SocketState.CLOSING
    second = asyncio.create_task(conn.connect_push())
    await asyncio.sleep(0)
    with pytest.raises(TransportFailure):
        await first

    fresh = sockets.sockets[1]
    fresh.open()
    await asyncio.sleep(0.1)

    assert [json.loads(data) for data in fresh.sent] == [{"n": 0}]
    fresh.message(READY)
    await second

"""Unit tests for the relay core: connections, presence, rooms, lifecycle.

These tests drive the services directly with recording WebSocket stand-ins
instead of going through the HTTP layer.
"""
import asyncio

import pytest

from app.auth.schemas import Identity
from app.auth.service import SessionAuthenticator
from app.chat.connection import Connection, ConnectionState
from app.chat.lifecycle import ConnectionLifecycleManager
from app.chat.presence import PresenceRegistry
from app.chat.relay import RelayEngine
from app.chat.rooms import RoomStore
from app.chat.schemas import Message, room_id_for
from app.errors import AuthError, RoomError
from app.storage import InMemoryMessageStore


def make_identity(user_id: str) -> Identity:
    return Identity(userId=user_id, username=user_id.capitalize())


def make_connection(websocket, user_id: str, queue_size: int = 256) -> Connection:
    connection = Connection(websocket, make_identity(user_id), queue_size=queue_size)
    connection.state = ConnectionState.AUTHENTICATED
    connection.start()
    return connection


def make_relay(require_join: bool = False, max_history: int = 0) -> RelayEngine:
    return RelayEngine(
        RoomStore(InMemoryMessageStore(), max_history=max_history),
        require_join=require_join,
    )


async def flush(*connections: Connection) -> None:
    for connection in connections:
        await connection.flush()


# =============================================================================
# Connection
# =============================================================================


@pytest.mark.asyncio
async def test_connection_delivers_in_enqueue_order(fake_websocket):
    ws = fake_websocket()
    conn = make_connection(ws, "alice")

    for i in range(10):
        assert conn.send({"type": "receive_message", "n": i})
    await conn.flush()

    assert [frame["n"] for frame in ws.sent] == list(range(10))
    await conn.close()


@pytest.mark.asyncio
async def test_failed_send_marks_connection_dead(fake_websocket):
    ws = fake_websocket(fail_sends=True)
    conn = make_connection(ws, "alice")

    assert conn.send({"type": "error", "error": "x"})
    await conn.flush()
    await asyncio.sleep(0.01)

    assert conn.alive is False
    assert conn.send({"type": "error", "error": "y"}) is False
    assert ws.closed_code == 1011
    await conn.close()


@pytest.mark.asyncio
async def test_full_queue_marks_connection_dead(fake_websocket):
    ws = fake_websocket(send_delay=0.05)
    conn = make_connection(ws, "alice", queue_size=2)

    results = [conn.send({"type": "error", "error": str(i)}) for i in range(5)]

    assert False in results
    assert conn.alive is False
    await asyncio.sleep(0.01)
    assert ws.closed_code == 1011
    await conn.close()


@pytest.mark.asyncio
async def test_close_discards_pending_frames(fake_websocket):
    ws = fake_websocket(send_delay=0.05)
    conn = make_connection(ws, "alice")
    for i in range(3):
        conn.send({"type": "error", "error": str(i)})

    await conn.close()

    assert conn.alive is False
    assert len(ws.sent) <= 1
    assert conn.send({"type": "error", "error": "late"}) is False


# =============================================================================
# Presence
# =============================================================================


@pytest.mark.asyncio
async def test_register_broadcasts_full_online_set(fake_websocket):
    presence = PresenceRegistry()
    ws_a, ws_b = fake_websocket(), fake_websocket()
    conn_a = make_connection(ws_a, "alice")
    conn_b = make_connection(ws_b, "bob")

    presence.register(conn_a.identity, conn_a)
    presence.register(conn_b.identity, conn_b)
    await flush(conn_a, conn_b)

    assert [len(f["users"]) for f in ws_a.sent] == [1, 2]
    assert [u["userId"] for u in ws_b.sent[-1]["users"]] == ["alice", "bob"]
    assert "alice" in presence
    assert len(presence) == 2


@pytest.mark.asyncio
async def test_reconnect_is_last_write_wins(fake_websocket):
    presence = PresenceRegistry()
    first = make_connection(fake_websocket(), "alice")
    second = make_connection(fake_websocket(), "alice")

    presence.register(first.identity, first)
    presence.register(second.identity, second)

    assert len(presence) == 1
    assert presence.get("alice").connection is second


@pytest.mark.asyncio
async def test_stale_unregister_is_ignored(fake_websocket):
    presence = PresenceRegistry()
    ws_bob = fake_websocket()
    bob = make_connection(ws_bob, "bob")
    first = make_connection(fake_websocket(), "alice")
    second = make_connection(fake_websocket(), "alice")
    presence.register(bob.identity, bob)
    presence.register(first.identity, first)
    presence.register(second.identity, second)
    await bob.flush()
    frames_before = len(ws_bob.sent)

    assert presence.unregister("alice", first) is False
    await bob.flush()

    assert presence.get("alice").connection is second
    # No broadcast for a change that did not happen
    assert len(ws_bob.sent) == frames_before

    assert presence.unregister("alice", second) is True
    await bob.flush()
    assert [u["userId"] for u in ws_bob.sent[-1]["users"]] == ["bob"]


@pytest.mark.asyncio
async def test_unregister_unknown_user_is_noop(fake_websocket):
    presence = PresenceRegistry()
    assert presence.unregister("ghost") is False


@pytest.mark.asyncio
async def test_list_online_excluding(fake_websocket):
    presence = PresenceRegistry()
    for user_id in ("alice", "bob", "carol"):
        conn = make_connection(fake_websocket(), user_id)
        presence.register(conn.identity, conn)

    assert [u.userId for u in presence.list_online()] == ["alice", "bob", "carol"]
    assert [u.userId for u in presence.list_online(excluding="bob")] == ["alice", "carol"]


# =============================================================================
# Rooms
# =============================================================================


def test_room_id_is_symmetric():
    assert room_id_for("alice", "bob") == room_id_for("bob", "alice")
    assert room_id_for("alice", "bob") == "room_alice_bob"
    assert room_id_for("alice", "bob") != room_id_for("alice", "carol")


def test_room_store_caps_history():
    rooms = RoomStore(InMemoryMessageStore(), max_history=2)
    for i in range(5):
        rooms.append_message("r1", Message(senderId="alice", payload=str(i), roomId="r1"))

    assert [m.payload for m in rooms.get_history("r1")] == ["3", "4"]
    assert len(rooms.store.history("r1")) == 5


def test_room_store_rejects_foreign_message():
    rooms = RoomStore(InMemoryMessageStore())
    with pytest.raises(ValueError):
        rooms.append_message("r1", Message(senderId="alice", payload="x", roomId="r2"))


def test_message_ids_are_unique():
    ids = {Message(senderId="a", payload="x", roomId="r").id for _ in range(100)}
    assert len(ids) == 100


# =============================================================================
# Relay
# =============================================================================


@pytest.mark.asyncio
async def test_join_delivers_history_then_live_messages(fake_websocket):
    relay = make_relay()
    ws_a, ws_b = fake_websocket(), fake_websocket()
    alice = make_connection(ws_a, "alice")
    bob = make_connection(ws_b, "bob")
    room_id = room_id_for("alice", "bob")

    assert await relay.join_room(alice, room_id) == []
    await relay.send_message(alice, room_id, "first")

    history = await relay.join_room(bob, room_id)
    await relay.send_message(alice, room_id, "second")
    await flush(alice, bob)

    assert [m.payload for m in history] == ["first"]
    assert ws_b.types() == ["message_history", "receive_message"]
    assert ws_b.sent[0]["messages"][0]["payload"] == "first"
    assert ws_b.sent[1]["payload"] == "second"
    # Sender receives its own echo
    assert [f["payload"] for f in ws_a.sent if f["type"] == "receive_message"] == [
        "first",
        "second",
    ]
    assert relay.get_room_size(room_id) == 2


@pytest.mark.asyncio
async def test_concurrent_sends_keep_history_and_delivery_order(fake_websocket):
    relay = make_relay()
    ws = fake_websocket()
    alice = make_connection(ws, "alice")
    bob = make_connection(fake_websocket(), "bob")
    await relay.join_room(alice, "r1")

    await asyncio.gather(*[
        relay.send_message(alice if i % 2 else bob, "r1", str(i)) for i in range(20)
    ])
    await alice.flush()

    history = [m.payload for m in relay.rooms.get_history("r1")]
    delivered = [f["payload"] for f in ws.sent if f["type"] == "receive_message"]
    assert sorted(history, key=int) == [str(i) for i in range(20)]
    assert delivered == history


@pytest.mark.asyncio
async def test_typing_excludes_sender(fake_websocket):
    relay = make_relay()
    ws_a, ws_b = fake_websocket(), fake_websocket()
    alice = make_connection(ws_a, "alice")
    bob = make_connection(ws_b, "bob")
    await relay.join_room(alice, "r1")
    await relay.join_room(bob, "r1")

    assert relay.start_typing(alice, "r1") == 1
    assert relay.stop_typing(alice, "r1") == 1
    await flush(alice, bob)

    assert ws_a.types() == ["message_history"]
    assert ws_b.types() == ["message_history", "user_typing", "user_stop_typing"]
    assert ws_b.sent[1]["username"] == "Alice"


@pytest.mark.asyncio
async def test_leave_room_clears_typing_and_unsubscribes(fake_websocket):
    relay = make_relay()
    ws_b = fake_websocket()
    alice = make_connection(fake_websocket(), "alice")
    bob = make_connection(ws_b, "bob")
    await relay.join_room(alice, "r1")
    await relay.join_room(bob, "r1")
    relay.start_typing(alice, "r1")

    assert relay.leave_room(alice, "r1") is True
    assert relay.leave_room(alice, "r1") is False
    await relay.send_message(bob, "r1", "still here?")
    await bob.flush()

    assert ws_b.types() == [
        "message_history",
        "user_typing",
        "user_stop_typing",
        "receive_message",
    ]
    assert not relay.is_joined(alice, "r1")
    assert alice.rooms == set()


@pytest.mark.asyncio
async def test_remove_connection_leaves_every_room(fake_websocket):
    relay = make_relay()
    alice = make_connection(fake_websocket(), "alice")
    for room_id in ("r1", "r2", "r3"):
        await relay.join_room(alice, room_id)

    relay.remove_connection(alice)

    assert all(relay.get_room_size(r) == 0 for r in ("r1", "r2", "r3"))
    assert alice.rooms == set()


@pytest.mark.asyncio
async def test_dead_subscriber_is_dropped_without_affecting_others(fake_websocket):
    relay = make_relay()
    ws_ok = fake_websocket()
    healthy = make_connection(ws_ok, "alice")
    broken = make_connection(fake_websocket(fail_sends=True), "bob")
    await relay.join_room(healthy, "r1")
    await relay.join_room(broken, "r1")
    await flush(healthy, broken)
    assert broken.alive is False

    await relay.send_message(healthy, "r1", "hello")
    await healthy.flush()

    assert relay.get_subscribers("r1") == [healthy]
    assert ws_ok.sent[-1]["payload"] == "hello"


@pytest.mark.asyncio
async def test_require_join_rejects_unjoined_events(fake_websocket):
    relay = make_relay(require_join=True)
    alice = make_connection(fake_websocket(), "alice")

    with pytest.raises(RoomError) as exc_info:
        await relay.send_message(alice, "r1", "x")
    assert exc_info.value.room_id == "r1"
    with pytest.raises(RoomError):
        relay.start_typing(alice, "r1")

    await relay.join_room(alice, "r1")
    await relay.send_message(alice, "r1", "x")
    assert len(relay.rooms.get_history("r1")) == 1


@pytest.mark.asyncio
async def test_unauthenticated_connection_cannot_relay(fake_websocket):
    relay = make_relay()
    conn = Connection(fake_websocket(), make_identity("alice"))

    with pytest.raises(AuthError):
        await relay.send_message(conn, "r1", "x")
    with pytest.raises(AuthError):
        await relay.join_room(conn, "r1")
    assert relay.rooms.get_history("r1") == []


# =============================================================================
# Lifecycle
# =============================================================================


def make_lifecycle(identity_provider):
    presence = PresenceRegistry()
    relay = make_relay()
    manager = ConnectionLifecycleManager(
        SessionAuthenticator(identity_provider), presence, relay
    )
    return manager, presence, relay


@pytest.mark.asyncio
async def test_open_rejects_bad_credential_before_accept(identity_provider, fake_websocket):
    manager, presence, _ = make_lifecycle(identity_provider)
    ws = fake_websocket()

    with pytest.raises(AuthError):
        await manager.open(ws, "garbage")

    assert ws.accepted is False
    assert ws.closed_code == 1008
    assert len(presence) == 0


@pytest.mark.asyncio
async def test_open_admits_and_announces(identity_provider, make_token, fake_websocket):
    manager, presence, _ = make_lifecycle(identity_provider)
    ws = fake_websocket()

    conn = await manager.open(ws, make_token("alice"))
    await conn.flush()

    assert ws.accepted is True
    assert conn.state is ConnectionState.AUTHENTICATED
    assert ws.types() == ["connected", "users_online"]
    assert ws.sent[0]["user"]["userId"] == "alice"
    assert presence.get("alice").connection is conn
    await manager.disconnect(conn)


@pytest.mark.asyncio
async def test_disconnect_is_idempotent(identity_provider, make_token, fake_websocket):
    manager, presence, relay = make_lifecycle(identity_provider)
    ws_bob = fake_websocket()
    bob = await manager.open(ws_bob, make_token("bob"))
    alice = await manager.open(fake_websocket(), make_token("alice"))
    await relay.join_room(alice, "r1")
    await bob.flush()
    frames_before = len(ws_bob.sent)

    assert await manager.disconnect(alice) is True
    assert await manager.disconnect(alice) is False
    await bob.flush()

    assert alice.state is ConnectionState.DISCONNECTED
    assert "alice" not in presence
    assert relay.get_room_size("r1") == 0
    # Exactly one presence refresh for the single disconnect
    assert len(ws_bob.sent) == frames_before + 1
    await manager.disconnect(bob)

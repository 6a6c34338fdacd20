"""
Tests for relay-side components: expiry policy, presence, routing and cleanup.
"""

import asyncio
import logging
from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from crypto.primitives import DecryptionFailure
from crypto.session import LoginSession, KeyExchangeSession, HandshakeState
from server.cleanup import CleanupSweeper
from server.database import Database, PersistenceError
from server.expiry import TTLSelection, compute_expiry
from server.presence import PresenceRegistry
from server.router import MessageRouter


NOW = datetime(2026, 1, 1, 12, 0, 0)


class FakeConnection:
    """Stands in for a WebSocket: records pushed frames"""

    def __init__(self, name="conn"):
        self.name = name
        self.sent = []

    async def send_json(self, payload):
        self.sent.append(payload)

    def of_type(self, event):
        return [frame["message"] for frame in self.sent if frame["type"] == event]


class ClosedConnection(FakeConnection):
    async def send_json(self, payload):
        raise RuntimeError("connection closed")


class DatabaseDirectory:
    """Key directory backed directly by the store"""

    def __init__(self, db):
        self.db = db

    async def fetch_public_key(self, identity_id):
        return await self.db.get_public_key(identity_id)


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await database.create_tables()
    yield database
    await database.close()


# -- expiry ------------------------------------------------------------


@pytest.mark.parametrize("ttl, delta", [
    ("1m", timedelta(milliseconds=60000)),
    ("1h", timedelta(milliseconds=3600000)),
    ("24h", timedelta(milliseconds=86400000)),
    ("5", timedelta(milliseconds=300000)),
    ("5m", timedelta(minutes=5)),
    ("1H", timedelta(hours=1)),
    ("24H", timedelta(hours=24)),
    (" 1M ", timedelta(minutes=1)),
    (90, timedelta(minutes=90)),
])
def test_expiry_offsets(ttl, delta):
    assert compute_expiry(ttl, NOW) == NOW + delta


@pytest.mark.parametrize("ttl", ["never", None, "", "0", "-5", "0m", "abc", "1.5", "m",
                                 "10000000000", "10000000000m", 10**30])
def test_no_expiry(ttl):
    assert compute_expiry(ttl, NOW) is None


def test_invalid_custom_ttl_is_logged(caplog):
    with caplog.at_level(logging.WARNING, logger="server.expiry"):
        assert compute_expiry("soon", NOW) is None
    assert "soon" in caplog.text


def test_unrepresentable_custom_ttl_is_logged(caplog):
    with caplog.at_level(logging.WARNING, logger="server.expiry"):
        assert compute_expiry("10000000000m", NOW) is None
    assert "10000000000" in caplog.text


def test_ttl_selection_parse():
    assert TTLSelection.parse("never").kind == "never"
    assert TTLSelection.parse("1h") == TTLSelection("fixed", "1h")
    assert TTLSelection.parse("15m") == TTLSelection("custom", "15")
    assert TTLSelection.parse("15").to_wire() == "15m"


def test_expiry_is_after_creation():
    for ttl in ("1m", "1h", "24h", "1"):
        assert compute_expiry(ttl, NOW) > NOW


# -- presence ----------------------------------------------------------


def test_presence_last_registration_wins():
    registry = PresenceRegistry()
    c1, c2 = FakeConnection("c1"), FakeConnection("c2")

    registry.register("u", c1)
    registry.register("u", c2)

    assert registry.lookup("u") is c2


def test_stale_disconnect_keeps_newer_connection():
    registry = PresenceRegistry()
    c1, c2 = FakeConnection("c1"), FakeConnection("c2")
    registry.register("u", c1)
    registry.register("u", c2)

    assert registry.unregister(c1) == []
    assert registry.lookup("u") is c2

    assert registry.unregister(c2) == ["u"]
    assert registry.lookup("u") is None
    assert not registry.is_online("u")


def test_presence_lookup_absent():
    registry = PresenceRegistry()
    assert registry.lookup("ghost") is None
    assert registry.online_identities() == []


def test_presence_tracks_several_identities():
    registry = PresenceRegistry()
    a, b = FakeConnection(), FakeConnection()
    registry.register("a", a)
    registry.register("b", b)

    assert sorted(registry.online_identities()) == ["a", "b"]
    registry.unregister(a)
    assert registry.online_identities() == ["b"]
    assert len(registry) == 1


# -- router ------------------------------------------------------------


@pytest.mark.asyncio
async def test_send_to_online_recipient(db):
    presence = PresenceRegistry()
    sender, receiver = FakeConnection("a"), FakeConnection("b")
    presence.register("bob", receiver)
    router = MessageRouter(db, presence, clock=lambda: NOW)

    record = await router.send("alice", "bob", "Y2lwaGVy", "bm9uY2U=", "1m", ack_to=sender)

    assert record["senderId"] == "alice"
    assert record["receiverId"] == "bob"
    assert record["createdAt"] == "2026-01-01T12:00:00.000Z"
    assert record["expiresAt"] == "2026-01-01T12:01:00.000Z"
    assert receiver.of_type("new_message") == [record]
    assert sender.of_type("message_sent") == [record]


@pytest.mark.asyncio
async def test_send_to_offline_recipient_is_stored(db):
    sender = FakeConnection()
    router = MessageRouter(db, PresenceRegistry(), clock=lambda: NOW)

    record = await router.send("alice", "bob", "Y2lwaGVy", "bm9uY2U=", "never", ack_to=sender)

    assert record["expiresAt"] is None
    assert sender.of_type("message_sent") == [record]
    history = await db.get_conversation("bob", "alice")
    assert [m.id for m in history] == [record["id"]]


@pytest.mark.asyncio
async def test_push_failure_is_a_delivery_miss(db):
    presence = PresenceRegistry()
    presence.register("bob", ClosedConnection())
    sender = FakeConnection()
    router = MessageRouter(db, presence)

    record = await router.send("alice", "bob", "Y2lwaGVy", "bm9uY2U=", ack_to=sender)

    assert sender.of_type("message_sent") == [record]


@pytest.mark.asyncio
async def test_persistence_failure_is_not_delivered():
    class FailingDatabase:
        async def create_message(self, **kwargs):
            raise PersistenceError("store unavailable")

    presence = PresenceRegistry()
    receiver, sender = FakeConnection(), FakeConnection()
    presence.register("bob", receiver)
    router = MessageRouter(FailingDatabase(), presence)

    with pytest.raises(PersistenceError):
        await router.send("alice", "bob", "Y2lwaGVy", "bm9uY2U=", "1m", ack_to=sender)

    assert receiver.sent == []
    assert sender.sent == []


@pytest.mark.asyncio
async def test_send_rejects_missing_fields(db):
    router = MessageRouter(db, PresenceRegistry())
    with pytest.raises(ValueError):
        await router.send("alice", "", "Y2lwaGVy", "bm9uY2U=")
    with pytest.raises(ValueError):
        await router.send("alice", "bob", None, "bm9uY2U=")


@pytest.mark.asyncio
async def test_history_is_ordered_and_scoped(db):
    clock = iter([NOW, NOW + timedelta(seconds=1), NOW + timedelta(seconds=2)])
    router = MessageRouter(db, PresenceRegistry(), clock=lambda: next(clock))

    first = await router.send("alice", "bob", "MQ==", "bm9uY2U=")
    await router.send("alice", "carol", "Mg==", "bm9uY2U=")
    third = await router.send("bob", "alice", "Mw==", "bm9uY2U=")

    history = await db.get_conversation("alice", "bob")
    assert [m.id for m in history] == [first["id"], third["id"]]


# -- cleanup -----------------------------------------------------------


@pytest.mark.asyncio
async def test_sweeper_removes_only_expired(db):
    router = MessageRouter(db, PresenceRegistry(), clock=lambda: NOW)
    short = await router.send("alice", "bob", "MQ==", "bm9uY2U=", "1m")
    await router.send("alice", "bob", "Mg==", "bm9uY2U=", "1h")
    await router.send("alice", "bob", "Mw==", "bm9uY2U=", "never")
    sweeper = CleanupSweeper(db)

    assert await sweeper.run_once(now=NOW + timedelta(seconds=30)) == 0
    assert await sweeper.run_once(now=NOW + timedelta(seconds=70)) == 1

    remaining = [m.id for m in await db.get_conversation("alice", "bob")]
    assert short["id"] not in remaining
    assert len(remaining) == 2


@pytest.mark.asyncio
async def test_sweeper_survives_failures(caplog):
    class FlakyDatabase:
        def __init__(self):
            self.calls = 0

        async def delete_expired_messages(self, now):
            self.calls += 1
            if self.calls == 1:
                raise RuntimeError("database is locked")
            return 2

    flaky = FlakyDatabase()
    sweeper = CleanupSweeper(flaky, interval=0.01)

    with caplog.at_level(logging.INFO, logger="server.cleanup"):
        sweeper.start()
        assert sweeper.running
        for _ in range(100):
            if flaky.calls >= 2:
                break
            await asyncio.sleep(0.01)
        await sweeper.stop()

    assert flaky.calls >= 2
    assert not sweeper.running
    assert "Error during cleanup cycle" in caplog.text
    assert "Pruned 2 expired records" in caplog.text


# -- end to end --------------------------------------------------------


@pytest.mark.asyncio
async def test_conversation_lifecycle(db):
    """Login, handshake, send with 1m TTL, deliver, decrypt, sweep after 70s"""
    alice_login, bob_login = LoginSession(), LoginSession()
    alice = await db.create_user("alice", "pw-alice", alice_login.public_key_b64)
    bob = await db.create_user("bob", "pw-bob", bob_login.public_key_b64)
    directory = DatabaseDirectory(db)

    presence = PresenceRegistry()
    alice_conn, bob_conn = FakeConnection("alice"), FakeConnection("bob")
    presence.register(alice.id, alice_conn)
    presence.register(bob.id, bob_conn)
    router = MessageRouter(db, presence, clock=lambda: NOW)
    sweeper = CleanupSweeper(db)

    a_to_b = KeyExchangeSession(alice_login, bob.id, directory)
    b_to_a = KeyExchangeSession(bob_login, alice.id, directory)
    assert await a_to_b.handshake() == HandshakeState.SECURE
    assert await b_to_a.handshake() == HandshakeState.SECURE

    content, iv = a_to_b.encrypt("hello")
    await router.send(alice.id, bob.id, content, iv, "1m", ack_to=alice_conn)

    [delivered] = bob_conn.of_type("new_message")
    [acked] = alice_conn.of_type("message_sent")
    assert acked["id"] == delivered["id"]
    assert b_to_a.decrypt(delivered["content"], delivered["iv"], delivered["id"]) == "hello"

    assert len(await db.get_conversation(alice.id, bob.id)) == 1
    await sweeper.run_once(now=NOW + timedelta(seconds=70))
    assert await db.get_conversation(alice.id, bob.id) == []


@pytest.mark.asyncio
async def test_key_rotation_scenario(db):
    alice_login, bob_login = LoginSession(), LoginSession()
    alice = await db.create_user("alice", "pw-alice", alice_login.public_key_b64)
    bob = await db.create_user("bob", "pw-bob", bob_login.public_key_b64)
    directory = DatabaseDirectory(db)
    presence = PresenceRegistry()
    alice_conn = FakeConnection()
    presence.register(alice.id, alice_conn)
    router = MessageRouter(db, presence)

    a_to_b = KeyExchangeSession(alice_login, bob.id, directory)
    await a_to_b.handshake()

    # Bob logs in again: new keypair, new published key
    bob_login.close()
    bob_login = LoginSession(bob.id)
    await db.rotate_public_key(bob.id, bob_login.public_key_b64)
    b_to_a = KeyExchangeSession(bob_login, alice.id, directory)
    await b_to_a.handshake()

    content, iv = b_to_a.encrypt("new keys")
    first = await router.send(bob.id, alice.id, content, iv)
    assert isinstance(a_to_b.decrypt(first["content"], first["iv"], first["id"]), DecryptionFailure)
    assert a_to_b.state == HandshakeState.FAILED

    assert await a_to_b.handshake() == HandshakeState.SECURE
    content, iv = b_to_a.encrypt("works again")
    second = await router.send(bob.id, alice.id, content, iv)
    assert a_to_b.decrypt(second["content"], second["iv"], second["id"]) == "works again"
    assert a_to_b.decrypt(first["content"], first["iv"], first["id"]) == "new keys"

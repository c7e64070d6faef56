"""Tests for the bounded owner cache, reply classification and presence."""
import pytest

from roomchat.chat.notifications import BoundedCache, NotificationRouter
from roomchat.chat.presence import PresenceRegistry
from roomchat.chat.schemas import Message
from roomchat.chat.store import utcnow


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        self.now += 1.0
        return self.now


def make_message(sender="alice", reply_to=None, owner=None, mentions=None, room="room-1"):
    return Message(
        roomId=room,
        senderId=sender,
        text="hello",
        replyTo=reply_to,
        replyToOwnerId=owner,
        mentions=mentions or [],
        createdAt=utcnow(),
    )


class TestBoundedCache:
    """Tests for BoundedCache eviction."""

    def test_evicts_oldest_inserted(self):
        cache = BoundedCache(capacity=2, clock=FakeClock())
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)

        assert "a" not in cache
        assert cache.get("b") == 2
        assert cache.get("c") == 3
        assert len(cache) == 2

    def test_reset_refreshes_timestamp(self):
        clock = FakeClock()
        cache = BoundedCache(capacity=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        first_stamp = cache.inserted_at("a")
        cache.set("a", 10)

        assert cache.inserted_at("a") > first_stamp
        cache.set("c", 3)
        assert "b" not in cache
        assert cache.get("a") == 10

    def test_reads_do_not_change_order(self):
        cache = BoundedCache(capacity=2, clock=FakeClock())
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        assert "a" not in cache

    def test_evict_on_empty(self):
        assert BoundedCache(capacity=1).evict() is None

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            BoundedCache(capacity=0)


class TestReplyClassification:
    """Tests for NotificationRouter.is_reply_to_me."""

    def test_own_messages_never_count(self):
        router = NotificationRouter(lambda _id: "alice")
        message = make_message(sender="alice", reply_to="x" * 24, owner="alice", mentions=["alice"])
        assert router.is_reply_to_me(message, "alice") is False

    def test_reply_owner_field_wins(self):
        router = NotificationRouter(lambda _id: pytest.fail("store should not be consulted"))
        message = make_message(reply_to="a" * 24, owner="bob", mentions=["carol"])
        assert router.is_reply_to_me(message, "bob") is True
        assert router.is_reply_to_me(message, "carol") is False

    def test_owner_lookup_populates_cache(self):
        lookups = []

        def lookup(message_id):
            lookups.append(message_id)
            return "bob"

        router = NotificationRouter(lookup)
        message = make_message(reply_to="b" * 24)
        assert router.is_reply_to_me(message, "bob") is True
        assert router.is_reply_to_me(message, "bob") is True
        assert lookups == ["b" * 24]
        assert router.cache.get("b" * 24) == "bob"

    def test_unresolvable_reply_falls_back_to_mentions(self):
        router = NotificationRouter(lambda _id: None)
        message = make_message(reply_to="c" * 24, mentions=["dave"])
        assert router.is_reply_to_me(message, "dave") is True
        assert router.is_reply_to_me(message, "erin") is False

    def test_remember_caches_sender(self):
        router = NotificationRouter(lambda _id: None, cache_size=1)
        first = make_message(sender="alice")
        second = make_message(sender="bob")
        router.remember(first)
        router.remember(second)
        assert router.owner_of(second.id) == "bob"
        assert router.owner_of(first.id) is None


class TestPresenceRegistry:
    """Tests for online/offline transitions."""

    def test_transitions_only_on_first_and_last(self):
        presence = PresenceRegistry()
        assert presence.add("alice", "c1") is True
        assert presence.add("alice", "c2") is False
        assert presence.remove("alice", "c1") is False
        assert presence.is_online("alice") is True
        assert presence.remove("alice", "c2") is True
        assert presence.is_online("alice") is False

    def test_remove_is_idempotent(self):
        presence = PresenceRegistry()
        presence.add("alice", "c1")
        assert presence.remove("alice", "c1") is True
        assert presence.remove("alice", "c1") is False
        assert presence.remove("nobody", "c9") is False

    def test_online_users(self):
        presence = PresenceRegistry()
        presence.add("bob", "c1")
        presence.add("alice", "c2")
        assert presence.online_users() == ["alice", "bob"]
        assert presence.connections_of("bob") == {"c1"}

"""Tests for the entity resolver (find-or-create under concurrency)."""

import threading

import pytest

from inboxsync.ingest.errors import (
    BackendError,
    ConstraintViolation,
    ResolutionError,
    TransientBackendError,
)
from inboxsync.ingest.normalizer import normalize
from inboxsync.ingest.resolver import EntityResolver

from helpers import EVENT_PAYLOAD, FakeRowStore


def _resolver(store, **kwargs):
    kwargs.setdefault("sleep", lambda _seconds: None)
    return EntityResolver(store, **kwargs)


class TestResolveSender:
    def test_creates_customer_on_first_sight(self, store):
        user_id = _resolver(store).resolve_sender("551199999999", "Ana", False)

        [user] = store.rows("users")
        assert user["id"] == user_id
        assert user["phone"] == "551199999999"
        assert user["name"] == "Ana"
        assert user["role"] == "customer"
        assert user["email"] == "551199999999@whatsapp.invalid"

    def test_outbound_sender_is_agent(self, store):
        _resolver(store).resolve_sender("5511000", "Bot", True)

        assert store.rows("users")[0]["role"] == "agent"

    def test_sequential_resolution_is_idempotent(self, store):
        resolver = _resolver(store)

        first = resolver.resolve_sender("551199999999", "Ana", False)
        second = resolver.resolve_sender("551199999999", "Ana Maria", False)

        assert first == second
        assert len(store.rows("users")) == 1
        # Name is only set on creation
        assert store.rows("users")[0]["name"] == "Ana"

    def test_lost_creation_race_returns_winner(self, store):
        resolver = _resolver(store)
        winner = {}

        def competing_worker(table, row):
            winner["id"] = store.insert(table, dict(row))["id"]

        store.before_insert = competing_worker

        user_id = resolver.resolve_sender("551199999999", "Ana", False)

        assert user_id == winner["id"]
        assert len(store.rows("users")) == 1

    def test_concurrent_workers_converge(self):
        store = FakeRowStore()
        barrier = threading.Barrier(2)
        results = []

        def run():
            resolver = _resolver(store)
            barrier.wait()
            results.append(resolver.resolve_sender("551199999999", "Ana", False))

        threads = [threading.Thread(target=run) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 2
        assert results[0] == results[1]
        assert len(store.rows("users")) == 1

    def test_violation_without_row_is_resolution_error(self, store):
        store.fail_next("insert", "users", ConstraintViolation("users"))

        with pytest.raises(ResolutionError):
            _resolver(store).resolve_sender("551199999999", "Ana", False)

    def test_malformed_address(self, store):
        with pytest.raises(ResolutionError, match="malformed"):
            _resolver(store).resolve_sender("  ", "Ana", False)

        assert store.calls == []

    def test_transient_errors_retried(self, store):
        sleeps = []
        store.fail_next("select", "users", TransientBackendError("timeout"), times=2)

        user_id = _resolver(store, attempts=3, sleep=sleeps.append).resolve_sender(
            "551199999999", "Ana", False
        )

        assert user_id
        assert len(sleeps) == 2
        assert sleeps[1] > sleeps[0]

    def test_transient_errors_surface_after_attempts(self, store):
        store.fail_next("insert", "users", TransientBackendError("reset"), times=3)

        with pytest.raises(TransientBackendError):
            _resolver(store, attempts=3).resolve_sender("551199999999", "Ana", False)

        assert store.count("insert", "users") == 3

    def test_backend_error_is_terminal(self, store):
        store.fail_next("insert", "users", BackendError("permission denied"))

        with pytest.raises(ResolutionError, match="permission denied"):
            _resolver(store).resolve_sender("551199999999", "Ana", False)


class TestResolveConversation:
    def test_creates_conversation_and_member_link(self, store):
        resolver = _resolver(store)
        user_id = resolver.resolve_sender("551199999999", "Ana", False)

        conv_id = resolver.resolve_conversation(
            "551199999999@s.whatsapp.net", "Chat Ana", "inst-1", user_id
        )

        [conv] = store.rows("conversations")
        assert conv["id"] == conv_id
        assert conv["whatsapp_chat_id"] == "551199999999@s.whatsapp.net"
        assert conv["title"] == "Chat Ana"
        assert conv["type"] == "support"
        assert conv["evolution_instance_id"] == "inst-1"
        assert conv["created_by"] == user_id

        [link] = store.rows("conversation_participants")
        assert link == {
            "id": link["id"],
            "conversation_id": conv_id,
            "user_id": user_id,
            "role": "member",
        }

    def test_outbound_creator_is_admin(self, store):
        _resolver(store).resolve_conversation("chat-1", "Chat", "default", "u1", is_outbound=True)

        assert store.rows("conversation_participants")[0]["role"] == "admin"

    def test_idempotent_and_links_once(self, store):
        resolver = _resolver(store)

        first = resolver.resolve_conversation("chat-1", "Chat", "default", "u1")
        second = resolver.resolve_conversation("chat-1", "Chat", "default", "u2")

        assert first == second
        assert len(store.rows("conversations")) == 1
        assert len(store.rows("conversation_participants")) == 1

    def test_race_loser_does_not_link(self, store):
        def competing_worker(table, row):
            store.insert(table, dict(row, created_by="other"))

        store.before_insert = competing_worker

        conv_id = _resolver(store).resolve_conversation("chat-1", "Chat", "default", "u1")

        assert conv_id == store.rows("conversations")[0]["id"]
        assert store.rows("conversation_participants") == []

    def test_participant_failure_keeps_conversation(self, store):
        store.fail_next("insert", "conversation_participants", BackendError("fk violation"))

        conv_id = _resolver(store).resolve_conversation("chat-1", "Chat", "default", "u1")

        assert store.rows("conversations")[0]["id"] == conv_id
        assert store.rows("conversation_participants") == []

    def test_no_creator_no_link(self, store):
        _resolver(store).resolve_conversation("chat-1", "Chat", "default", None)

        assert store.rows("conversation_participants") == []

    def test_malformed_chat_id(self, store):
        with pytest.raises(ResolutionError):
            _resolver(store).resolve_conversation("", "Chat", "default", "u1")


class TestResolve:
    def test_sender_before_conversation(self, store):
        entities = _resolver(store).resolve(normalize(EVENT_PAYLOAD))

        inserts = [c for c in store.calls if c[0] == "insert"]
        assert inserts[0] == ("insert", "users")
        assert inserts[1] == ("insert", "conversations")
        assert store.rows("conversations")[0]["created_by"] == entities.user_id
        assert store.rows("users")[0]["phone"] == "551199999999"

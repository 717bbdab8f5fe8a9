"""Tests for the sharded in-memory session store."""
from concurrent.futures import ThreadPoolExecutor

import pytest

from context.sessions import SessionKey, SessionStore, _shard_index
from models.schemas import Session


class TestSessionStore:
    def test_missing_key(self):
        store = SessionStore()
        session, found = store.get(SessionKey("broker", "549"))
        assert session is None
        assert found is False

    def test_set_then_get(self):
        store = SessionStore()
        key = SessionKey("broker", "549")
        store.set(key, Session(state="PRICING", data={"price": "100"}))
        session, found = store.get(key)
        assert found
        assert session.state == "PRICING"
        assert session.data == {"price": "100"}

    def test_get_returns_a_copy(self):
        store = SessionStore()
        key = SessionKey("broker", "549")
        store.set(key, Session(state="MENU"))
        session, _ = store.get(key)
        session.state = "DONE"
        session.data["x"] = "y"
        again, _ = store.get(key)
        assert again.state == "MENU"
        assert again.data == {}

    def test_set_replaces_whole_record(self):
        store = SessionStore()
        key = SessionKey("broker", "549")
        store.set(key, Session(state="A", data={"a": "1"}))
        store.set(key, Session(state="B", data={"b": "2"}))
        session, _ = store.get(key)
        assert session.data == {"b": "2"}

    def test_get_or_create(self):
        store = SessionStore()
        key = SessionKey("broker", "549")
        session, created = store.get_or_create(key, "MENU")
        assert created
        assert session.state == "MENU"
        assert session.data == {}

        session.state = "PRICING"
        store.set(key, session)
        session, created = store.get_or_create(key, "MENU")
        assert not created
        assert session.state == "PRICING"

    def test_tenants_are_isolated(self):
        store = SessionStore()
        store.set(SessionKey("a", "549"), Session(state="X"))
        session, found = store.get(SessionKey("b", "549"))
        assert not found
        assert store.count == 1

    def test_shard_placement_is_stable(self):
        key = SessionKey("broker", "5491100000001")
        assert _shard_index(key, 16) == _shard_index(SessionKey("broker", "5491100000001"), 16)
        assert 0 <= _shard_index(key, 16) < 16

    def test_rejects_zero_shards(self):
        with pytest.raises(ValueError):
            SessionStore(shards=0)

    def test_concurrent_writers_for_distinct_users(self):
        store = SessionStore(shards=4)

        def write(i):
            key = SessionKey("broker", f"user{i}")
            session, _ = store.get_or_create(key, "MENU")
            session.merge({"owner": f"user{i}"})
            store.set(key, session)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(write, range(300)))

        assert store.count == 300
        for i in range(300):
            session, _ = store.get(SessionKey("broker", f"user{i}"))
            assert session.data["owner"] == f"user{i}"


class TestSessionModel:
    def test_typed_accessors(self):
        session = Session(state="MENU")
        assert session.last_selected_id == ""
        session.last_selected_id = "SLOT_1"
        assert session.data["last_selected_id"] == "SLOT_1"
        session.merge({"name": "Ana"})
        assert session.name == "Ana"

    def test_touch_moves_timestamp_forward(self):
        session = Session(state="MENU")
        before = session.updated_at
        session.touch()
        assert session.updated_at >= before
        assert session.updated_at.tzinfo is not None

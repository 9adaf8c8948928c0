"""Tests for the key-value stores and the typed repository."""

import fcntl
import json
import threading

from math_tutor_client.models.session import ChatSession, GuidanceMode, MessageRole
from math_tutor_client.storage.demo import DEMO_PLAYERS, seed_demo_data
from math_tutor_client.storage.repository import (
    CURRENT_SESSION_KEY,
    LEADERBOARD_KEY,
    SESSIONS_KEY,
    USERS_KEY,
    TutorRepository,
)
from math_tutor_client.storage.store import JsonFileStore, MemoryStore


class TestJsonFileStore:
    def test_missing_key(self, tmp_path):
        store = JsonFileStore(tmp_path / "store.json")
        assert store.get("nothing") is None

    def test_set_get_delete(self, tmp_path):
        path = tmp_path / "nested" / "store.json"
        store = JsonFileStore(path)
        store.set("a", "1")
        store.set("b", "2")
        assert store.get("a") == "1"
        store.delete("a")
        assert store.get("a") is None
        assert json.loads(path.read_text()) == {"b": "2"}

    def test_survives_new_instance(self, tmp_path):
        JsonFileStore(tmp_path / "store.json").set("k", "v")
        assert JsonFileStore(tmp_path / "store.json").get("k") == "v"


class TestRepository:
    def test_users_and_current_pointer(self, repository):
        assert repository.get_current_user() is None
        user = repository.create_user("Ada")
        repository.set_current_user(user.id)
        assert repository.get_current_user() == user
        assert repository.get_user("missing") is None

    def test_payload_is_versioned_camel_case(self):
        store = MemoryStore()
        repository = TutorRepository(store)
        repository.create_session(ChatSession(user_id="u1", guidance_mode=GuidanceMode.SOFT))
        payload = json.loads(store.get(SESSIONS_KEY))
        assert payload["version"] == 1
        item = payload["items"][0]
        assert item["userId"] == "u1"
        assert item["guidanceMode"] == "soft"
        assert item["isCompleted"] is False

    def test_reads_unversioned_list(self):
        store = MemoryStore({
            USERS_KEY: json.dumps([
                {"id": "demo-1", "name": "Emma", "createdAt": "2024-01-01T00:00:00"}
            ]),
        })
        users = TutorRepository(store).list_users()
        assert [u.name for u in users] == ["Emma"]

    def test_update_session_replaces_stored_copy(self, repository):
        session = repository.create_session(ChatSession(user_id="u1"))
        before = session.updated_at
        session.append_message(MessageRole.BOT, "[TOPIC: Algebra] Hi")
        repository.update_session(session)
        stored = repository.get_session(session.id)
        assert stored.messages[0].content == "[TOPIC: Algebra] Hi"
        assert stored.updated_at >= before

    def test_update_unknown_session_is_ignored(self, repository):
        repository.update_session(ChatSession(user_id="u1"))
        assert repository.list_sessions() == []

    def test_user_sessions_filtered(self, repository):
        repository.create_session(ChatSession(user_id="u1"))
        repository.create_session(ChatSession(user_id="u2"))
        assert len(repository.list_user_sessions("u1")) == 1

    def test_current_session_pointer_cleared_with_none(self, repository):
        repository.set_current_session_id("abc")
        assert repository.get_current_session_id() == "abc"
        repository.set_current_session_id(None)
        assert repository.get_current_session_id() is None
        assert repository.store.get(CURRENT_SESSION_KEY) is None


class TestDemoSeed:
    def test_seeds_empty_store(self, repository):
        assert seed_demo_data(repository) is True
        assert len(repository.list_users()) == len(DEMO_PLAYERS)
        assert [e.score for e in repository.load_leaderboard()] == [1250, 980, 750, 620, 450]

    def test_does_not_overwrite_existing_leaderboard(self):
        store = MemoryStore()
        repository = TutorRepository(store)
        repository.create_user("Ada")
        seed_demo_data(repository)
        assert [u.name for u in repository.list_users()] == ["Ada"]
        assert store.get(LEADERBOARD_KEY) is not None
        assert seed_demo_data(repository) is False


class TestJsonFileStoreLocking:
    def test_reader_waits_for_writer_lock(self, tmp_path):
        store = JsonFileStore(tmp_path / "store.json")
        store.set("k", "v")
        results = []

        with open(tmp_path / "store.json.lock", "a") as lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            reader = threading.Thread(target=lambda: results.append(store.get("k")))
            reader.start()
            reader.join(timeout=0.1)
            assert reader.is_alive()
            assert results == []
        reader.join(timeout=2)
        assert results == ["v"]

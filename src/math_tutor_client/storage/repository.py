"""Typed access to the persisted key-value layout."""

import json
from datetime import datetime
from typing import TypeVar

import structlog
from pydantic import TypeAdapter

from math_tutor_client.models.common import StoredModel
from math_tutor_client.models.scoring import LeaderboardEntry, UserTopicStats
from math_tutor_client.models.session import ChatSession, User
from math_tutor_client.storage.store import KeyValueStore

logger = structlog.get_logger()

USERS_KEY = "math_tutor_users"
SESSIONS_KEY = "math_tutor_sessions"
LEADERBOARD_KEY = "math_tutor_leaderboard"
TOPIC_STATS_KEY = "math_tutor_topic_stats"
CURRENT_USER_KEY = "math_tutor_current_user"
CURRENT_SESSION_KEY = "math_tutor_current_session"

PAYLOAD_VERSION = 1

M = TypeVar("M", bound=StoredModel)


class TutorRepository:
    """Get/set/list by entity type over a KeyValueStore.

    List values are stored as ``{"version": 1, "items": [...]}``; a bare
    JSON list written by older clients is accepted on read.

    Args:
        store: Backing key-value store.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    def _load_list(self, key: str, model: type[M]) -> list[M]:
        raw = self.store.get(key)
        if not raw:
            return []
        payload = json.loads(raw)
        if isinstance(payload, dict):
            version = payload.get("version")
            if version != PAYLOAD_VERSION:
                logger.warning("store_payload_version_mismatch", key=key, version=version)
            payload = payload.get("items", [])
        return TypeAdapter(list[model]).validate_python(payload)

    def _save_list(self, key: str, items: list[StoredModel]) -> None:
        envelope = {
            "version": PAYLOAD_VERSION,
            "items": [item.to_store() for item in items],
        }
        self.store.set(key, json.dumps(envelope))

    # Users

    def list_users(self) -> list[User]:
        return self._load_list(USERS_KEY, User)

    def save_users(self, users: list[User]) -> None:
        self._save_list(USERS_KEY, users)

    def get_user(self, user_id: str) -> User | None:
        return next((u for u in self.list_users() if u.id == user_id), None)

    def create_user(self, name: str) -> User:
        users = self.list_users()
        user = User(name=name)
        users.append(user)
        self.save_users(users)
        logger.info("user_created", user_id=user.id)
        return user

    def get_current_user(self) -> User | None:
        user_id = self.store.get(CURRENT_USER_KEY)
        return self.get_user(user_id) if user_id else None

    def set_current_user(self, user_id: str) -> None:
        self.store.set(CURRENT_USER_KEY, user_id)

    # Sessions

    def list_sessions(self) -> list[ChatSession]:
        return self._load_list(SESSIONS_KEY, ChatSession)

    def get_session(self, session_id: str) -> ChatSession | None:
        return next((s for s in self.list_sessions() if s.id == session_id), None)

    def list_user_sessions(self, user_id: str) -> list[ChatSession]:
        return [s for s in self.list_sessions() if s.user_id == user_id]

    def create_session(self, session: ChatSession) -> ChatSession:
        sessions = self.list_sessions()
        sessions.append(session)
        self._save_list(SESSIONS_KEY, sessions)
        return session

    def update_session(self, session: ChatSession) -> ChatSession:
        """Replace the stored copy of a session. Unknown ids are ignored."""
        sessions = self.list_sessions()
        for i, existing in enumerate(sessions):
            if existing.id == session.id:
                session.updated_at = datetime.now()
                sessions[i] = session
                self._save_list(SESSIONS_KEY, sessions)
                break
        return session

    def get_current_session_id(self) -> str | None:
        return self.store.get(CURRENT_SESSION_KEY)

    def set_current_session_id(self, session_id: str | None) -> None:
        if session_id:
            self.store.set(CURRENT_SESSION_KEY, session_id)
        else:
            self.store.delete(CURRENT_SESSION_KEY)

    # Leaderboard

    def load_leaderboard(self) -> list[LeaderboardEntry]:
        return self._load_list(LEADERBOARD_KEY, LeaderboardEntry)

    def save_leaderboard(self, entries: list[LeaderboardEntry]) -> None:
        self._save_list(LEADERBOARD_KEY, entries)

    # Topic stats

    def load_topic_stats(self) -> list[UserTopicStats]:
        return self._load_list(TOPIC_STATS_KEY, UserTopicStats)

    def save_topic_stats(self, stats: list[UserTopicStats]) -> None:
        self._save_list(TOPIC_STATS_KEY, stats)

"""REST API routes for users, leaderboard, topics and session history."""

import functools
import uuid

import structlog
from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from math_tutor_client.config import get_settings
from math_tutor_client.scoring.ledger import ScoreLedger
from math_tutor_client.scoring.topics import TopicTracker
from math_tutor_client.storage.repository import TutorRepository
from math_tutor_client.storage.store import JsonFileStore

logger = structlog.get_logger()
router = APIRouter(prefix="/api")


@functools.lru_cache
def get_repository() -> TutorRepository:
    """Repository over the configured JSON store (singleton)."""
    settings = get_settings()
    return TutorRepository(JsonFileStore(settings.resolved_store_path))


class CreateUserRequest(BaseModel):
    name: str = Field(min_length=1, max_length=80)


def validate_session_id(session_id: str) -> str:
    try:
        uuid.UUID(session_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid session ID format")
    return session_id


@router.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}


@router.post("/users")
async def create_user(body: CreateUserRequest) -> dict:
    """Create a user on first run and make it the current user."""
    repository = get_repository()
    user = repository.create_user(body.name.strip())
    repository.set_current_user(user.id)
    return user.to_store()


@router.get("/users/current")
async def get_current_user() -> dict:
    user = get_repository().get_current_user()
    if user is None:
        raise HTTPException(status_code=404, detail="No current user")
    return user.to_store()


@router.get("/leaderboard")
async def get_leaderboard() -> list[dict]:
    """Leaderboard entries with their 1-based rank."""
    entries = ScoreLedger(get_repository()).leaderboard()
    return [
        {"rank": rank, **entry.to_store()}
        for rank, entry in enumerate(entries, start=1)
    ]


@router.get("/users/{user_id}/topics")
async def get_user_topics(user_id: str) -> dict:
    """Per-topic counters and overall accuracy for a user."""
    tracker = TopicTracker(get_repository())
    summary = tracker.summarize(user_id)
    return {
        "userId": user_id,
        "stats": [
            {**stats.to_store(), "accuracy": stats.accuracy}
            for stats in tracker.get_user_topic_stats(user_id)
        ],
        "totalQuestions": summary.total_questions,
        "correctlyAnswered": summary.correctly_answered,
        "accuracy": summary.accuracy,
    }


@router.get("/topics")
async def list_topics() -> list[str]:
    """Topics seen by any user."""
    return TopicTracker(get_repository()).get_available_topics()


@router.get("/sessions")
async def list_sessions(user_id: str | None = None) -> list[dict]:
    """List saved sessions, newest first."""
    repository = get_repository()
    sessions = (
        repository.list_user_sessions(user_id) if user_id else repository.list_sessions()
    )
    sessions.sort(key=lambda s: s.created_at, reverse=True)
    return [
        {
            "id": s.id,
            "userId": s.user_id,
            "createdAt": s.created_at.isoformat(),
            "guidanceMode": s.guidance_mode.value,
            "topic": s.topic,
            "isCompleted": s.is_completed,
            "messageCount": len(s.messages),
        }
        for s in sessions
    ]


@router.get("/sessions/{session_id}")
async def get_session(session_id: str) -> dict:
    """Get a specific session's full data."""
    session_id = validate_session_id(session_id)
    session = get_repository().get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session.to_store()

"""Shared fixtures: in-memory persistence and a scripted gateway."""

import asyncio
import json

import pytest

from math_tutor_client.models.session import User
from math_tutor_client.scoring.ledger import ScoreLedger
from math_tutor_client.scoring.topics import TopicTracker
from math_tutor_client.storage.repository import TutorRepository
from math_tutor_client.storage.store import MemoryStore


def sse_event(content: str) -> str:
    """One event-stream line pair carrying a content delta."""
    payload = {"choices": [{"delta": {"content": content}}]}
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def sse_body(*contents: str, done: bool = True) -> bytes:
    body = "".join(sse_event(c) for c in contents)
    if done:
        body += "data: [DONE]\n\n"
    return body.encode("utf-8")


class ScriptedGateway:
    """Stands in for TutorGateway; replays queued bodies or raises queued errors."""

    def __init__(self):
        self.requests = []
        self._responses: list = []

    def queue(self, body: bytes | Exception, release: asyncio.Event | None = None) -> None:
        self._responses.append((body, release))

    async def stream_chat(self, request):
        self.requests.append(request)
        body, release = self._responses.pop(0)
        if isinstance(body, Exception):
            raise body
        # Split into small chunks to exercise the decoder
        for i in range(0, len(body), 7):
            if release is not None and i > 0:
                await release.wait()
            yield body[i : i + 7]

    async def aclose(self) -> None:
        pass


@pytest.fixture
def repository():
    return TutorRepository(MemoryStore())


@pytest.fixture
def ledger(repository):
    return ScoreLedger(repository)


@pytest.fixture
def topics(repository):
    return TopicTracker(repository)


@pytest.fixture
def gateway():
    return ScriptedGateway()


@pytest.fixture
def user(repository):
    return repository.create_user("Ada")

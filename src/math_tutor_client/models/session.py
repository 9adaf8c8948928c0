"""Session data models."""

import uuid
from datetime import datetime
from enum import StrEnum

from pydantic import Field

from math_tutor_client.models.common import StoredModel


class MessageRole(StrEnum):
    """Author of a chat message."""

    BOT = "bot"
    STUDENT = "student"


class GuidanceMode(StrEnum):
    """How the tutor paces the solution."""

    GUIDED = "guided"  # one step per turn, no auto-advance
    SOFT = "soft"  # auto-advances after evaluating each answer


class SessionPhase(StrEnum):
    """Tutoring lifecycle states."""

    MODE_SELECTION = "mode_selection"
    PROBLEM_INTAKE = "problem_intake"
    TUTORING = "tutoring"
    COMPLETED = "completed"


def new_id() -> str:
    return str(uuid.uuid4())


class User(StoredModel):
    """A learner; identity for every other aggregate."""

    id: str = Field(default_factory=new_id)
    name: str
    created_at: datetime = Field(default_factory=datetime.now)


class ChatMessage(StoredModel):
    """A single message in the tutoring conversation."""

    id: str = Field(default_factory=new_id)
    role: MessageRole
    content: str = ""
    timestamp: datetime = Field(default_factory=datetime.now)


class SolutionStep(StoredModel):
    step_number: int
    description: str = ""
    expected_answer: str = ""
    hint: str = ""
    is_completed: bool = False


class ChatSession(StoredModel):
    """One tutoring problem and its conversation."""

    id: str = Field(default_factory=new_id)
    user_id: str
    problem_text: str = ""
    problem_image_url: str = ""
    guidance_mode: GuidanceMode = GuidanceMode.GUIDED
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    messages: list[ChatMessage] = Field(default_factory=list)
    current_step_index: int = 0
    solution_steps: list[SolutionStep] = Field(default_factory=list)
    is_completed: bool = False
    current_question: str = ""
    topic: str | None = None

    @property
    def last_message(self) -> ChatMessage | None:
        return self.messages[-1] if self.messages else None

    def append_message(self, role: MessageRole, content: str = "") -> ChatMessage:
        """Append a message to the conversation."""
        message = ChatMessage(role=role, content=content)
        self.messages.append(message)
        return message

    def set_topic(self, topic: str | None) -> bool:
        """Replace the topic with a non-empty value; never clears it.

        Returns:
            True if the topic changed.
        """
        if not topic or not topic.strip():
            return False
        topic = topic.strip()
        if topic == self.topic:
            return False
        self.topic = topic
        return True

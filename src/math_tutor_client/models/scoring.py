"""Leaderboard and per-topic progress models."""

from pydantic import BaseModel, Field

from math_tutor_client.models.common import StoredModel


class LeaderboardEntry(StoredModel):
    user_id: str
    user_name: str
    score: int = 0


class ScoreResult(BaseModel):
    """Outcome of a score award. Not persisted."""

    previous_rank: int
    new_rank: int
    total_score: int


class Celebration(BaseModel):
    """Payload of the event fired once per completed problem."""

    session_id: str
    points_earned: int
    previous_rank: int
    new_rank: int
    total_score: int
    topic: str | None = None

    @property
    def rank_improved(self) -> bool:
        return self.new_rank < self.previous_rank


class TopicStats(StoredModel):
    """Counters for one topic. total_questions == 0 means registered only."""

    topic: str
    total_questions: int = 0
    correctly_answered: int = 0

    @property
    def accuracy(self) -> int:
        """Percentage of correctly answered questions, rounded."""
        if self.total_questions == 0:
            return 0
        return round(self.correctly_answered / self.total_questions * 100)


class UserTopicStats(StoredModel):
    user_id: str
    stats: list[TopicStats] = Field(default_factory=list)

    def find(self, topic: str) -> TopicStats | None:
        return next((s for s in self.stats if s.topic == topic), None)


class TopicSummary(BaseModel):
    """Overall accuracy across all of a user's topics."""

    total_questions: int = 0
    correctly_answered: int = 0

    @property
    def accuracy(self) -> int:
        if self.total_questions == 0:
            return 0
        return round(self.correctly_answered / self.total_questions * 100)

"""Leaderboard score awards and rank computation."""

import structlog

from math_tutor_client.models.scoring import LeaderboardEntry, ScoreResult
from math_tutor_client.storage.repository import TutorRepository

logger = structlog.get_logger()


def _ranked(entries: list[LeaderboardEntry]) -> list[LeaderboardEntry]:
    # Ties keep no particular order; callers must not rely on it.
    return sorted(entries, key=lambda e: e.score, reverse=True)


def _rank_in(entries: list[LeaderboardEntry], user_id: str) -> int | None:
    for position, entry in enumerate(_ranked(entries), start=1):
        if entry.user_id == user_id:
            return position
    return None


class ScoreLedger:
    """Monotonic per-user scores and 1-based descending ranks.

    Args:
        repository: Persistence for the leaderboard list.
    """

    def __init__(self, repository: TutorRepository):
        self.repository = repository

    def leaderboard(self) -> list[LeaderboardEntry]:
        """Entries sorted by descending score."""
        return _ranked(self.repository.load_leaderboard())

    def rank_of(self, user_id: str) -> int | None:
        return _rank_in(self.repository.load_leaderboard(), user_id)

    def score_of(self, user_id: str) -> int:
        entry = next(
            (e for e in self.repository.load_leaderboard() if e.user_id == user_id), None
        )
        return entry.score if entry else 0

    def add_score(self, user_id: str, user_name: str, delta: int) -> ScoreResult:
        """Add points to a user, creating the entry on first award.

        Args:
            user_id: Leaderboard identity.
            user_name: Display name stored with a new entry.
            delta: Non-negative number of points.

        Returns:
            Ranks before and after the award, and the new total.
        """
        if delta < 0:
            raise ValueError("score delta must be non-negative")

        entries = self.repository.load_leaderboard()
        previous_rank = _rank_in(entries, user_id)
        if previous_rank is None:
            previous_rank = len(entries) + 1

        entry = next((e for e in entries if e.user_id == user_id), None)
        if entry is None:
            entry = LeaderboardEntry(user_id=user_id, user_name=user_name, score=delta)
            entries.append(entry)
        else:
            entry.score += delta
        self.repository.save_leaderboard(_ranked(entries))

        new_rank = _rank_in(entries, user_id) or len(entries)
        logger.info(
            "score_added",
            user_id=user_id,
            delta=delta,
            total=entry.score,
            previous_rank=previous_rank,
            new_rank=new_rank,
        )
        return ScoreResult(previous_rank=previous_rank, new_rank=new_rank, total_score=entry.score)

"""Per-user, per-topic question counters."""

import structlog

from math_tutor_client.models.scoring import TopicStats, TopicSummary, UserTopicStats
from math_tutor_client.storage.repository import TutorRepository

logger = structlog.get_logger()


class TopicTracker:
    """Tracks which topics a user has seen and how often they solved them.

    Topic discovery (register only) and topic scoring are separate events,
    so an entry may exist with zero questions.

    Args:
        repository: Persistence for the per-user stats list.
    """

    def __init__(self, repository: TutorRepository):
        self.repository = repository

    def update_topic_stats(
        self,
        user_id: str,
        topic: str,
        is_correct: bool,
        register_only: bool = False,
    ) -> TopicStats:
        """Ensure a counter exists for the topic and optionally count an answer.

        Args:
            user_id: Owner of the stats.
            topic: Topic name as detected in the tutor's response.
            is_correct: Whether the counted answer was correct.
            register_only: Only ensure the entry exists; leave counters alone.

        Returns:
            The topic's counters after the update.
        """
        all_stats = self.repository.load_topic_stats()
        user_stats = next((s for s in all_stats if s.user_id == user_id), None)
        if user_stats is None:
            user_stats = UserTopicStats(user_id=user_id)
            all_stats.append(user_stats)

        stats = user_stats.find(topic)
        if stats is None:
            stats = TopicStats(topic=topic)
            user_stats.stats.append(stats)
            logger.info("topic_registered", user_id=user_id, topic=topic)

        if not register_only:
            stats.total_questions += 1
            if is_correct:
                stats.correctly_answered += 1

        self.repository.save_topic_stats(all_stats)
        return stats

    def get_user_topic_stats(self, user_id: str) -> list[TopicStats]:
        for user_stats in self.repository.load_topic_stats():
            if user_stats.user_id == user_id:
                return user_stats.stats
        return []

    def get_available_topics(self) -> list[str]:
        """Sorted, de-duplicated topics across all users."""
        topics = {
            stats.topic
            for user_stats in self.repository.load_topic_stats()
            for stats in user_stats.stats
        }
        return sorted(topics)

    def summarize(self, user_id: str) -> TopicSummary:
        stats = self.get_user_topic_stats(user_id)
        return TopicSummary(
            total_questions=sum(s.total_questions for s in stats),
            correctly_answered=sum(s.correctly_answered for s in stats),
        )

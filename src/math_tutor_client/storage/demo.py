"""First-run demo users so the leaderboard is never empty."""

import structlog

from math_tutor_client.models.scoring import LeaderboardEntry
from math_tutor_client.models.session import User
from math_tutor_client.storage.repository import TutorRepository

logger = structlog.get_logger()

DEMO_PLAYERS: list[tuple[str, str, int]] = [
    ("demo-1", "Alexander Schmidt", 1250),
    ("demo-2", "Emma Johnson", 980),
    ("demo-3", "Lucas Müller", 750),
    ("demo-4", "Sophia Williams", 620),
    ("demo-5", "Oliver Brown", 450),
]


def seed_demo_data(repository: TutorRepository) -> bool:
    """Populate demo users and scores where the stored lists are empty.

    Returns:
        True if anything was written.
    """
    seeded = False
    if not repository.list_users():
        repository.save_users([User(id=uid, name=name) for uid, name, _ in DEMO_PLAYERS])
        seeded = True
    if not repository.load_leaderboard():
        repository.save_leaderboard([
            LeaderboardEntry(user_id=uid, user_name=name, score=score)
            for uid, name, score in DEMO_PLAYERS
        ])
        seeded = True
    if seeded:
        logger.info("demo_data_seeded", players=len(DEMO_PLAYERS))
    return seeded

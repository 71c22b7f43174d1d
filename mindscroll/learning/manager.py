"""
Client-facing learning API.

The presentation layer only needs two calls from here, ``get_session`` and
``record_card_action``; the rest are progress and statistics queries.
"""

import time
from typing import Optional, List, Dict, Any

from .models import CardActionResult, ChapterProgress, ReviewState, Session
from .progression import ProgressionController
from .scheduler import ReviewScheduler, SchedulerConfig
from .storage import LearningStorage


class LearningManager:
    """
    High-level API for studying generated content.

    Example:
        manager = LearningManager(db_path="learning.db")

        session = manager.get_session(user_id, content_id, limit=10)
        for card in session.cards:
            result = manager.record_card_action(user_id, card.card_id, "known")
            print(f"+{result.xp_gained} XP, next review in {result.state.interval} days")
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        storage: Optional[LearningStorage] = None,
        scheduler_config: Optional[SchedulerConfig] = None
    ):
        """
        Initialize learning manager.

        Args:
            db_path: Path to the learning database (None for default)
            storage: Existing LearningStorage to share (overrides db_path)
            scheduler_config: Review update rule constants
        """
        self.storage = storage or LearningStorage(db_path)
        self.scheduler = ReviewScheduler(self.storage, scheduler_config)
        self.progression = ProgressionController(self.storage)

    def get_session(self, user_id: str, content_id: str, limit: int = 20) -> Session:
        """Next cards to study; an empty card list means nothing is left to do."""
        return self.progression.get_session(user_id, content_id, limit=limit)

    def record_card_action(
        self,
        user_id: str,
        card_id: str,
        action: str,
        session_id: Optional[str] = None
    ) -> CardActionResult:
        """Record a known/unknown/skip outcome; returns XP gained and the new state."""
        return self.scheduler.record_action(user_id, card_id, action, session_id=session_id)

    def get_review_state(self, user_id: str, card_id: str) -> ReviewState:
        return self.scheduler.get_state(user_id, card_id)

    def get_chapter_progress(self, user_id: str, content_id: str) -> List[ChapterProgress]:
        return self.progression.content_progress(user_id, content_id)

    def get_due_cards(
        self,
        user_id: str,
        until: Optional[float] = None,
        content_id: Optional[str] = None
    ) -> List[str]:
        """Card ids due for review by ``until`` (default: now)."""
        until = until if until is not None else time.time()
        return self.storage.get_due_card_ids(user_id, until, content_id=content_id)

    def get_review_history(self, user_id: str, card_id: str) -> List[Dict[str, Any]]:
        return self.storage.get_review_history(user_id, card_id)

    def get_statistics(self, user_id: str) -> Dict[str, Any]:
        return self.storage.get_user_statistics(user_id)

    def close(self):
        """Close database connections."""
        self.storage.close()

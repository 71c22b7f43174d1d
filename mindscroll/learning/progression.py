"""
Chapter progression: which cards to serve next and when a chapter is done.

A chapter moves through its phases in order (flashcards, quizzes, summary).
A phase is complete when every card of that type is completed for the user;
cards marked unknown keep their phase open and are served again.
"""

import logging
import time
from typing import Optional, List, Dict

from .models import (
    Card,
    CardType,
    ChapterNotFoundError,
    ChapterProgress,
    ContentNotFoundError,
    ReviewState,
    ReviewStatus,
    Session,
    SessionProgression,
    PHASES,
    FINAL_SUMMARY_PHASE,
    COMPLETE_PHASE,
)
from .storage import LearningStorage

logger = logging.getLogger(__name__)


def is_completed(state: Optional[ReviewState]) -> bool:
    return state is not None and state.status == ReviewStatus.COMPLETED


def build_progress(
    user_id: str,
    chapter_id: str,
    cards: List[Card],
    states: Dict[str, ReviewState]
) -> ChapterProgress:
    """Derive a chapter's progress from its cards and the user's review states."""
    progress = ChapterProgress(user_id=user_id, chapter_id=chapter_id)
    for card in cards:
        count = progress.phase(card.type)
        count.total += 1
        if is_completed(states.get(card.card_id)):
            count.completed += 1
    progress.completion_percentage = progress.compute_percentage()
    return progress


class ProgressionController:
    """
    Decides what a user studies next within a content item.

    Chapters are taken in chapter order; the first chapter that is not
    complete supplies the session. Once every chapter is complete, the
    content's chapterless summary card (if any) is served on its own.
    """

    def __init__(self, storage: LearningStorage):
        self.storage = storage

    def get_session(
        self,
        user_id: str,
        content_id: str,
        limit: int = 20,
        now: Optional[float] = None
    ) -> Session:
        """
        Build the next study session.

        Pending cards of the current chapter are ordered by phase, then
        due-or-unseen before not-yet-due, then chapter order.

        Args:
            user_id: Studying user
            content_id: Content item to study
            limit: Maximum number of cards returned
            now: Current time (defaults to time.time())

        Returns:
            Session; its card list is empty once everything is complete

        Raises:
            ContentNotFoundError: If the content does not exist
            ValueError: If limit is not positive
        """
        if limit < 1:
            raise ValueError(f"limit must be positive, got {limit}")
        if self.storage.get_content(content_id) is None:
            raise ContentNotFoundError(f"Content not found: {content_id}")

        now = now if now is not None else time.time()

        for chapter in self.storage.get_chapters(content_id):
            cards = self.storage.get_chapter_cards(chapter.chapter_id)
            states = self.storage.get_review_states(user_id, [card.card_id for card in cards])
            progress = build_progress(user_id, chapter.chapter_id, cards, states)

            if progress.is_complete:
                continue

            pending = [card for card in cards if not is_completed(states.get(card.card_id))]
            pending.sort(key=lambda card: self._serve_order(card, states.get(card.card_id), now))

            completed = sum(count.completed for count in (progress.flashcards, progress.quizzes, progress.summaries))
            total = len(cards)

            logger.debug(
                "Session for user %s: chapter %s phase %s, %d/%d cards done",
                user_id, chapter.chapter_number, progress.current_phase.value, completed, total
            )

            return Session(
                cards=pending[:limit],
                progression=SessionProgression(
                    current_phase=progress.current_phase.value,
                    chapter_id=chapter.chapter_id,
                    chapter_number=chapter.chapter_number,
                    chapter_title=chapter.title,
                    completed_cards=completed,
                    total_cards=total,
                    completion_percentage=progress.completion_percentage,
                ),
            )

        summary = self.storage.get_content_summary_card(content_id)
        if summary is not None and not is_completed(self.storage.get_review_state(user_id, summary.card_id)):
            return Session(
                cards=[summary],
                progression=SessionProgression(
                    current_phase=FINAL_SUMMARY_PHASE,
                    completed_cards=0,
                    total_cards=1,
                    completion_percentage=0,
                ),
            )

        return Session(
            cards=[],
            progression=SessionProgression(current_phase=COMPLETE_PHASE, completion_percentage=100),
        )

    @staticmethod
    def _serve_order(card: Card, state: Optional[ReviewState], now: float):
        due = state is None or state.is_due(now)
        next_review = state.next_review if state is not None and state.next_review is not None else 0.0
        return (PHASES.index(card.type), 0 if due else 1, next_review if not due else 0.0, card.order_index)

    def current_phase(self, user_id: str, chapter_id: str) -> Optional[CardType]:
        """Active phase of a chapter, None once it is complete."""
        return self.chapter_progress(user_id, chapter_id).current_phase

    def chapter_progress(self, user_id: str, chapter_id: str) -> ChapterProgress:
        """
        Progress of one chapter, derived from the current review states.

        Raises:
            ChapterNotFoundError: If the chapter does not exist
        """
        if self.storage.get_chapter(chapter_id) is None:
            raise ChapterNotFoundError(f"Chapter not found: {chapter_id}")
        return self.storage.compute_chapter_progress(user_id, chapter_id)

    def content_progress(self, user_id: str, content_id: str) -> List[ChapterProgress]:
        """Per-chapter progress of a content item, in chapter order."""
        if self.storage.get_content(content_id) is None:
            raise ContentNotFoundError(f"Content not found: {content_id}")
        return [
            self.storage.compute_chapter_progress(user_id, chapter.chapter_id)
            for chapter in self.storage.get_chapters(content_id)
        ]

    def content_completion(self, user_id: str, content_id: str) -> int:
        """Overall completion of a content item: mean of its chapter percentages."""
        chapters = self.content_progress(user_id, content_id)
        if not chapters:
            return 0
        return int(round(sum(progress.completion_percentage for progress in chapters) / len(chapters)))

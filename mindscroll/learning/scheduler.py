"""
Spaced repetition scheduling for individual cards.

The update rule is an SM-2 variant driven by three outcomes instead of six
grades:

- known:   difficulty += 0.1 (capped at 3.5), interval grows to
           max(interval + 1, round(interval * difficulty)), capped at 365 days
- unknown: difficulty -= 0.2 (floored at 1.3), interval and repetitions reset
- skip:    only the attempt counter moves

Given the same prior state, outcome and clock, the result is always the same.
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Optional, List

from .models import (
    Card,
    CardAction,
    CardActionResult,
    CardNotFoundError,
    ReviewState,
    ReviewStatus,
    SECONDS_PER_DAY,
)
from .storage import LearningStorage

logger = logging.getLogger(__name__)


@dataclass
class SchedulerConfig:
    """Constants of the review update rule."""
    initial_difficulty: float = 2.5
    minimum_difficulty: float = 1.3
    maximum_difficulty: float = 3.5
    known_difficulty_step: float = 0.1
    unknown_difficulty_step: float = 0.2
    max_interval_days: int = 365


# XP awarded per action
XP_REWARDS = {
    CardAction.KNOWN: 10,
    CardAction.UNKNOWN: 5,
    CardAction.SKIP: 2,
}

# Locks shared by all (user, card) pairs
LOCK_STRIPES = 64


def parse_action(action) -> CardAction:
    """Accept a CardAction or its string value."""
    try:
        return CardAction(action)
    except ValueError:
        raise ValueError(f"Unknown card action: {action!r}")


def apply_action(
    state: ReviewState,
    action: CardAction,
    now: float,
    config: Optional[SchedulerConfig] = None
) -> ReviewState:
    """
    Compute the ReviewState that follows ``action``.

    Pure function: the input state is not modified.

    Args:
        state: Current state (a fresh default state for a first review)
        action: Reported outcome
        now: Call time as a Unix timestamp
        config: Update rule constants

    Returns:
        New ReviewState
    """
    config = config or SchedulerConfig()
    new = replace(state, attempts=state.attempts + 1, last_reviewed=now)

    if action == CardAction.KNOWN:
        new.difficulty = min(config.maximum_difficulty, state.difficulty + config.known_difficulty_step)
        grown = max(state.interval + 1, int(round(state.interval * new.difficulty)))
        new.interval = max(1, min(config.max_interval_days, grown))
        new.repetitions = state.repetitions + 1
        new.streak = state.streak + 1
        new.review_count = state.review_count + 1
        new.next_review = now + new.interval * SECONDS_PER_DAY
        new.is_known = True
        new.status = ReviewStatus.COMPLETED

    elif action == CardAction.UNKNOWN:
        new.difficulty = max(config.minimum_difficulty, state.difficulty - config.unknown_difficulty_step)
        new.interval = 1
        new.repetitions = 0
        new.streak = 0
        new.review_count = state.review_count + 1
        new.next_review = now + SECONDS_PER_DAY
        new.is_known = False
        new.status = ReviewStatus.NEEDS_REVIEW

    return new


class ReviewScheduler:
    """
    Records card actions for users.

    Actions on the same (user, card) pair are serialized. Pairs share a fixed
    set of locks, so unrelated pairs only wait on each other when they hash
    to the same one.
    """

    def __init__(self, storage: LearningStorage, config: Optional[SchedulerConfig] = None):
        """
        Initialize scheduler.

        Args:
            storage: LearningStorage holding cards and review state
            config: Update rule constants (defaults if None)
        """
        self.storage = storage
        self.config = config or SchedulerConfig()

        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(LOCK_STRIPES)]

    def _pair_lock(self, user_id: str, card_id: str) -> threading.Lock:
        return self._locks[hash((user_id, card_id)) % len(self._locks)]

    def get_state(self, user_id: str, card_id: str) -> ReviewState:
        """Current state of a card for a user, defaults if never reviewed."""
        if self.storage.get_card(card_id) is None:
            raise CardNotFoundError(f"Card not found: {card_id}")

        state = self.storage.get_review_state(user_id, card_id)
        if state is None:
            state = ReviewState(user_id=user_id, card_id=card_id, difficulty=self.config.initial_difficulty)
        return state

    def record_action(
        self,
        user_id: str,
        card_id: str,
        action,
        session_id: Optional[str] = None,
        now: Optional[float] = None
    ) -> CardActionResult:
        """
        Record a known/unknown/skip outcome for a card.

        Args:
            user_id: Reviewing user
            card_id: Card reviewed
            action: CardAction or one of 'known', 'unknown', 'skip'
            session_id: Optional client session the action belongs to
            now: Call time (defaults to time.time())

        Returns:
            CardActionResult with XP gained, new state and chapter progress

        Raises:
            CardNotFoundError: If the card does not exist
            ValueError: If the action is unknown
        """
        action = parse_action(action)
        card: Optional[Card] = self.storage.get_card(card_id)
        if card is None:
            raise CardNotFoundError(f"Card not found: {card_id}")

        now = now if now is not None else time.time()
        xp_gained = XP_REWARDS[action]

        def update(state: ReviewState) -> ReviewState:
            # Lazily created state
            if state.last_reviewed is None and state.attempts == 0:
                state = replace(state, difficulty=self.config.initial_difficulty)
            return apply_action(state, action, now, self.config)

        with self._pair_lock(user_id, card_id):
            state, progress = self.storage.record_review(
                card,
                user_id,
                update,
                action=action.value,
                xp_gained=xp_gained,
                session_id=session_id,
                now=now,
            )

        logger.info(
            "Recorded %s for card %s (user %s): interval=%sd difficulty=%.2f status=%s",
            action.value, card_id, user_id, state.interval, state.difficulty, state.status.value
        )

        return CardActionResult(xp_gained=xp_gained, state=state, chapter_progress=progress)

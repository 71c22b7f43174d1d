"""
Data models for cards, per-user review state and chapter progress.

All models support dict conversion for storage in SQLite.
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, List


SECONDS_PER_DAY = 24 * 60 * 60


class CardType(str, Enum):
    """Card kinds, in the order a chapter progresses through them."""
    FLASHCARD = "FLASHCARD"
    QUIZ = "QUIZ"
    SUMMARY = "SUMMARY"


# Phase order within a chapter
PHASES = (CardType.FLASHCARD, CardType.QUIZ, CardType.SUMMARY)

# Phase reported once every chapter is done and only the content summary is left
FINAL_SUMMARY_PHASE = "FINAL_SUMMARY"
COMPLETE_PHASE = "COMPLETE"


class ReviewStatus(str, Enum):
    """Mastery status of one card for one user."""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    NEEDS_REVIEW = "needs_review"


class CardAction(str, Enum):
    """Outcome a user reports for a card."""
    KNOWN = "known"
    UNKNOWN = "unknown"
    SKIP = "skip"


class CardNotFoundError(LookupError):
    """Raised when an action targets a card id that does not exist."""


class ChapterNotFoundError(LookupError):
    """Raised when a chapter id does not exist."""


class ContentNotFoundError(LookupError):
    """Raised when a content id does not exist."""


@dataclass
class Card:
    """A persisted card. Immutable once generated."""
    content_id: str
    type: CardType
    title: str
    order_index: int
    payload: Dict[str, Any]
    chapter_id: Optional[str] = None
    provenance: Dict[str, Any] = field(default_factory=dict)
    card_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'card_id': self.card_id,
            'content_id': self.content_id,
            'chapter_id': self.chapter_id,
            'type': self.type.value,
            'title': self.title,
            'order_index': self.order_index,
            'payload': json.dumps(self.payload),
            'provenance': json.dumps(self.provenance) if self.provenance else None,
            'created_at': self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Card':
        return cls(
            card_id=data['card_id'],
            content_id=data['content_id'],
            chapter_id=data.get('chapter_id'),
            type=CardType(data['type']),
            title=data['title'],
            order_index=data['order_index'],
            payload=json.loads(data['payload']) if data.get('payload') else {},
            provenance=json.loads(data['provenance']) if data.get('provenance') else {},
            created_at=data['created_at'],
        )


@dataclass
class Chapter:
    """A chapter of a content item."""
    content_id: str
    chapter_number: int
    title: str
    chapter_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'chapter_id': self.chapter_id,
            'content_id': self.content_id,
            'chapter_number': self.chapter_number,
            'title': self.title,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Chapter':
        return cls(
            chapter_id=data['chapter_id'],
            content_id=data['content_id'],
            chapter_number=data['chapter_number'],
            title=data['title'],
        )


@dataclass
class Content:
    """A content item produced from one upload."""
    title: str
    user_id: Optional[str] = None
    upload_id: Optional[str] = None
    description: str = ""
    source_type: Optional[str] = None
    total_cards: int = 0
    content_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'content_id': self.content_id,
            'upload_id': self.upload_id,
            'user_id': self.user_id,
            'title': self.title,
            'description': self.description,
            'source_type': self.source_type,
            'total_cards': self.total_cards,
            'created_at': self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Content':
        return cls(**{key: data.get(key) for key in (
            'content_id', 'upload_id', 'user_id', 'title', 'description',
            'source_type', 'total_cards', 'created_at'
        )})


@dataclass
class ReviewState:
    """
    Mastery record for one (user, card) pair.

    Drives spaced repetition: ``difficulty`` plays the role of an SM-2 ease
    factor and ``interval`` is the number of days until the card is due.
    """
    user_id: str
    card_id: str
    status: ReviewStatus = ReviewStatus.NOT_STARTED
    attempts: int = 0
    is_known: bool = False
    review_count: int = 0
    streak: int = 0
    difficulty: float = 2.5
    interval: int = 1
    repetitions: int = 0
    next_review: Optional[float] = None
    last_reviewed: Optional[float] = None

    def is_due(self, now: Optional[float] = None) -> bool:
        """Never-reviewed cards are always due."""
        if self.next_review is None:
            return True
        return (now if now is not None else time.time()) >= self.next_review

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'card_id': self.card_id,
            'status': self.status.value,
            'attempts': self.attempts,
            'is_known': int(self.is_known),
            'review_count': self.review_count,
            'streak': self.streak,
            'difficulty': self.difficulty,
            'interval': self.interval,
            'repetitions': self.repetitions,
            'next_review': self.next_review,
            'last_reviewed': self.last_reviewed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReviewState':
        return cls(
            user_id=data['user_id'],
            card_id=data['card_id'],
            status=ReviewStatus(data['status']),
            attempts=data['attempts'],
            is_known=bool(data['is_known']),
            review_count=data['review_count'],
            streak=data['streak'],
            difficulty=data['difficulty'],
            interval=data['interval'],
            repetitions=data['repetitions'],
            next_review=data.get('next_review'),
            last_reviewed=data.get('last_reviewed'),
        )


@dataclass
class PhaseCount:
    """Completed/total cards of one type within a chapter."""
    completed: int = 0
    total: int = 0

    @property
    def is_complete(self) -> bool:
        return self.completed >= self.total


@dataclass
class ChapterProgress:
    """
    Per-user aggregate for one chapter.

    Derived from ReviewState rows; it can always be recomputed.
    """
    user_id: str
    chapter_id: str
    flashcards: PhaseCount = field(default_factory=PhaseCount)
    quizzes: PhaseCount = field(default_factory=PhaseCount)
    summaries: PhaseCount = field(default_factory=PhaseCount)
    completion_percentage: int = 0
    last_accessed: Optional[float] = None

    def phase(self, card_type: CardType) -> PhaseCount:
        return {
            CardType.FLASHCARD: self.flashcards,
            CardType.QUIZ: self.quizzes,
            CardType.SUMMARY: self.summaries,
        }[card_type]

    @property
    def is_complete(self) -> bool:
        return all(self.phase(card_type).is_complete for card_type in PHASES)

    @property
    def current_phase(self) -> Optional[CardType]:
        """Earliest phase with cards left to complete, None when the chapter is done."""
        for card_type in PHASES:
            if not self.phase(card_type).is_complete:
                return card_type
        return None

    def compute_percentage(self) -> int:
        """
        Equal-weight mean of the per-phase completion ratios.

        Phases without cards are ignored; only a fully complete chapter
        reports 100.
        """
        if self.is_complete:
            return 100
        counts = [self.phase(card_type) for card_type in PHASES if self.phase(card_type).total > 0]
        ratio = sum(count.completed / count.total for count in counts) / len(counts)
        return min(99, int(round(ratio * 100)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'chapter_id': self.chapter_id,
            'flashcards_completed': self.flashcards.completed,
            'flashcards_total': self.flashcards.total,
            'quizzes_completed': self.quizzes.completed,
            'quizzes_total': self.quizzes.total,
            'summaries_completed': self.summaries.completed,
            'summaries_total': self.summaries.total,
            'completion_percentage': self.completion_percentage,
            'last_accessed': self.last_accessed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChapterProgress':
        return cls(
            user_id=data['user_id'],
            chapter_id=data['chapter_id'],
            flashcards=PhaseCount(data['flashcards_completed'], data['flashcards_total']),
            quizzes=PhaseCount(data['quizzes_completed'], data['quizzes_total']),
            summaries=PhaseCount(data['summaries_completed'], data['summaries_total']),
            completion_percentage=data['completion_percentage'],
            last_accessed=data.get('last_accessed'),
        )


@dataclass
class SessionProgression:
    """Where the user stands in a content item."""
    current_phase: str
    chapter_id: Optional[str] = None
    chapter_number: Optional[int] = None
    chapter_title: Optional[str] = None
    completed_cards: int = 0
    total_cards: int = 0
    completion_percentage: int = 0


@dataclass
class Session:
    """Cards to show next and the progression they belong to."""
    cards: List[Card]
    progression: SessionProgression

    @property
    def is_complete(self) -> bool:
        return not self.cards


@dataclass
class CardActionResult:
    """Outcome of recording one card action."""
    xp_gained: int
    state: ReviewState
    chapter_progress: Optional[ChapterProgress] = None

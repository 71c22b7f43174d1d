"""
Review scheduling and chapter progression for generated cards.

Key Components:
- ReviewScheduler: per (user, card) spaced repetition state
- ProgressionController: per (user, chapter) phase progression and sessions
- LearningStorage: SQLite persistence for content, cards and review state
- LearningManager: the API the presentation layer talks to
"""

from .models import (
    Card,
    CardAction,
    CardActionResult,
    CardNotFoundError,
    CardType,
    Chapter,
    ChapterNotFoundError,
    ChapterProgress,
    Content,
    ContentNotFoundError,
    PhaseCount,
    ReviewState,
    ReviewStatus,
    Session,
    SessionProgression,
    PHASES,
)
from .storage import LearningStorage
from .scheduler import ReviewScheduler, SchedulerConfig, apply_action, XP_REWARDS
from .progression import ProgressionController
from .manager import LearningManager

__all__ = [
    # Data models
    'Card',
    'CardAction',
    'CardActionResult',
    'CardType',
    'Chapter',
    'ChapterProgress',
    'Content',
    'PhaseCount',
    'ReviewState',
    'ReviewStatus',
    'Session',
    'SessionProgression',
    'PHASES',

    # Errors
    'CardNotFoundError',
    'ChapterNotFoundError',
    'ContentNotFoundError',

    # Core components
    'LearningStorage',
    'ReviewScheduler',
    'SchedulerConfig',
    'apply_action',
    'XP_REWARDS',
    'ProgressionController',
    'LearningManager',
]

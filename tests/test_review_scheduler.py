"""
Tests for the spaced repetition update rule and ReviewScheduler.
"""

import threading

import pytest

from mindscroll.learning import (
    CardAction,
    CardNotFoundError,
    ReviewScheduler,
    ReviewState,
    ReviewStatus,
    SchedulerConfig,
    apply_action,
    XP_REWARDS,
)
from mindscroll.learning.models import SECONDS_PER_DAY
from mindscroll.learning.scheduler import LOCK_STRIPES

NOW = 1_700_000_000.0


def fresh_state():
    return ReviewState(user_id="u1", card_id="c1")


@pytest.fixture
def scheduler(learning_storage):
    return ReviewScheduler(learning_storage)


@pytest.fixture
def card_ids(learning_storage, sample_content):
    """Card ids of the sample chapter in serve order: F1, F2, Q1, S1"""
    return [card.card_id for card in learning_storage.get_content_cards(sample_content.content_id)]


class TestApplyAction:
    """The pure update rule"""

    def test_does_not_modify_input(self):
        state = fresh_state()
        apply_action(state, CardAction.KNOWN, NOW)
        assert state == fresh_state()

    def test_deterministic(self):
        state = fresh_state()
        assert apply_action(state, CardAction.UNKNOWN, NOW) == apply_action(state, CardAction.UNKNOWN, NOW)

    def test_first_known(self):
        new = apply_action(fresh_state(), CardAction.KNOWN, NOW)

        assert new.difficulty == pytest.approx(2.6)
        assert new.interval >= 2
        assert new.repetitions == 1
        assert new.streak == 1
        assert new.is_known
        assert new.status == ReviewStatus.COMPLETED
        assert new.next_review == NOW + new.interval * SECONDS_PER_DAY
        assert new.attempts == 1
        assert new.last_reviewed == NOW

    def test_known_interval_never_decreases(self):
        state = fresh_state()
        for _ in range(30):
            new = apply_action(state, CardAction.KNOWN, NOW)
            assert new.interval >= state.interval
            state = new
        assert state.interval == 365

    def test_known_next_review_strictly_increases(self):
        state = fresh_state()
        now = NOW
        previous = None
        for _ in range(10):
            state = apply_action(state, CardAction.KNOWN, now)
            if previous is not None:
                assert state.next_review > previous
            previous = state.next_review
            now = state.next_review

    def test_unknown_resets(self):
        state = fresh_state()
        for _ in range(3):
            state = apply_action(state, CardAction.KNOWN, NOW)

        new = apply_action(state, CardAction.UNKNOWN, NOW)
        assert new.interval == 1
        assert new.repetitions == 0
        assert new.streak == 0
        assert not new.is_known
        assert new.status == ReviewStatus.NEEDS_REVIEW
        assert new.next_review == NOW + SECONDS_PER_DAY
        assert new.difficulty == pytest.approx(state.difficulty - 0.2)

    def test_skip_only_counts_attempt(self):
        state = apply_action(fresh_state(), CardAction.KNOWN, NOW)
        new = apply_action(state, CardAction.SKIP, NOW + 10)

        assert new.attempts == state.attempts + 1
        assert new.last_reviewed == NOW + 10
        for name in ('difficulty', 'interval', 'repetitions', 'streak', 'review_count',
                     'next_review', 'is_known', 'status'):
            assert getattr(new, name) == getattr(state, name)

    def test_difficulty_bounds(self):
        state = fresh_state()
        for _ in range(20):
            state = apply_action(state, CardAction.UNKNOWN, NOW)
        assert state.difficulty == pytest.approx(1.3)

        for _ in range(30):
            state = apply_action(state, CardAction.KNOWN, NOW)
        assert state.difficulty == pytest.approx(3.5)

    def test_custom_interval_cap(self):
        config = SchedulerConfig(max_interval_days=30)
        state = fresh_state()
        for _ in range(10):
            state = apply_action(state, CardAction.KNOWN, NOW, config)
        assert state.interval == 30


class TestReviewScheduler:
    """Recording actions through storage"""

    def test_first_action_creates_state(self, scheduler, card_ids):
        result = scheduler.record_action("alice", card_ids[0], "known", now=NOW)

        assert result.xp_gained == XP_REWARDS[CardAction.KNOWN] == 10
        assert result.state.status == ReviewStatus.COMPLETED
        assert scheduler.get_state("alice", card_ids[0]) == result.state

        # Other users are unaffected
        assert scheduler.get_state("bob", card_ids[0]).status == ReviewStatus.NOT_STARTED

    def test_xp_per_action(self, scheduler, card_ids, learning_storage):
        gained = [
            scheduler.record_action("alice", card_ids[0], action, now=NOW).xp_gained
            for action in ("known", "unknown", "skip")
        ]
        assert gained == [10, 5, 2]
        assert learning_storage.get_xp("alice") == 17

    def test_review_log(self, scheduler, card_ids, learning_storage):
        scheduler.record_action("alice", card_ids[0], "unknown", session_id="s1", now=NOW)
        scheduler.record_action("alice", card_ids[0], "known", session_id="s1", now=NOW + 60)

        history = learning_storage.get_review_history("alice", card_ids[0])
        assert [entry['action'] for entry in history] == ["unknown", "known"]
        assert all(entry['session_id'] == "s1" for entry in history)

    def test_chapter_progress_written_with_review(self, scheduler, card_ids, learning_storage):
        result = scheduler.record_action("alice", card_ids[0], "known", now=NOW)

        progress = result.chapter_progress
        assert progress.flashcards.completed == 1
        assert progress.flashcards.total == 2
        stored = learning_storage.get_chapter_progress("alice", progress.chapter_id)
        assert stored == progress

    def test_unknown_card(self, scheduler):
        with pytest.raises(CardNotFoundError):
            scheduler.record_action("alice", "missing", "known")
        with pytest.raises(CardNotFoundError):
            scheduler.get_state("alice", "missing")

    def test_unknown_action(self, scheduler, card_ids):
        with pytest.raises(ValueError):
            scheduler.record_action("alice", card_ids[0], "maybe")

    def test_due_cards(self, scheduler, card_ids, learning_storage):
        scheduler.record_action("alice", card_ids[0], "unknown", now=NOW)
        scheduler.record_action("alice", card_ids[1], "known", now=NOW)

        assert learning_storage.get_due_card_ids("alice", NOW) == []
        assert learning_storage.get_due_card_ids("alice", NOW + SECONDS_PER_DAY) == [card_ids[0]]

    def test_statistics(self, scheduler, card_ids, learning_storage):
        for card_id in card_ids[:2]:
            scheduler.record_action("alice", card_id, "known", now=NOW)
        scheduler.record_action("alice", card_ids[2], "unknown", now=NOW)

        stats = learning_storage.get_user_statistics("alice")
        assert stats == {'xp': 25, 'level': 1, 'cards_reviewed': 3, 'cards_known': 2}

    def test_concurrent_actions_on_same_card(self, scheduler, card_ids):
        card_id = card_ids[0]
        errors = []

        def review():
            try:
                for _ in range(5):
                    scheduler.record_action("alice", card_id, "skip")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=review) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert scheduler.get_state("alice", card_id).attempts == 20

    def test_concurrent_known_and_unknown_keep_every_update(self, scheduler, card_ids, learning_storage):
        card_id = card_ids[0]
        errors = []

        def review(action):
            try:
                for _ in range(5):
                    scheduler.record_action("alice", card_id, action)
            except Exception as e:
                errors.append(e)

        threads = [
            threading.Thread(target=review, args=(action,))
            for action in ("known", "unknown", "known", "unknown")
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        state = scheduler.get_state("alice", card_id)
        assert state.review_count == 20
        assert state.attempts == 20
        assert learning_storage.get_xp("alice") == 10 * 10 + 10 * 5

        # Replaying the log in write order reproduces the stored state
        history = sorted(learning_storage.get_review_history("alice", card_id), key=lambda entry: entry['id'])
        assert len(history) == 20
        replayed = ReviewState(user_id="alice", card_id=card_id)
        for entry in history:
            replayed = apply_action(replayed, CardAction(entry['action']), entry['reviewed_at'])

        assert state.interval == replayed.interval
        assert state.difficulty == pytest.approx(replayed.difficulty)
        assert state.streak == replayed.streak
        assert state.repetitions == replayed.repetitions

    def test_lock_table_does_not_grow(self, scheduler, card_ids):
        for user in range(200):
            scheduler.record_action(f"user-{user}", card_ids[user % len(card_ids)], "skip", now=NOW)

        assert len(scheduler._locks) == LOCK_STRIPES
        assert scheduler._pair_lock("alice", card_ids[0]) is scheduler._pair_lock("alice", card_ids[0])

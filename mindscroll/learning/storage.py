"""
SQLite storage for generated content and per-user learning state.

Cards are written once by the pipeline; review state, chapter progress and
XP are written by the review scheduler.
"""

import time
from pathlib import Path
from typing import Optional, List, Dict, Any, Callable, Tuple

from ..db import SQLiteStore
from .models import (
    Card,
    CardType,
    Chapter,
    ChapterProgress,
    Content,
    PhaseCount,
    ReviewState,
    PHASES,
)


class LearningStorage(SQLiteStore):
    """
    SQLite-based storage for contents, chapters, cards and review state.

    A review write (ReviewState, derived ChapterProgress, XP and the review
    log entry) happens in a single immediate transaction.
    """

    schema_dir = Path(__file__).parent
    default_db_name = "learning.db"

    # Content ingestion

    def save_card_set(
        self,
        card_set,
        user_id: Optional[str] = None,
        upload_id: Optional[str] = None,
        source_type: Optional[str] = None
    ) -> Content:
        """
        Persist a generated card set as a new content item.

        Within each chapter, cards are ordered by phase (flashcards, quizzes,
        summaries) and then by generation order. The optional whole-content
        summary is stored without a chapter.

        Args:
            card_set: Validated CardSet from the generator
            user_id: Owner of the upload
            upload_id: Upload the cards were generated from (unique)
            source_type: Kind of source the text came from

        Returns:
            The created Content
        """
        content = Content(
            title=card_set.title,
            user_id=user_id,
            upload_id=upload_id,
            description=card_set.description,
            source_type=source_type,
            total_cards=card_set.total_cards,
        )

        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO contents (
                    content_id, upload_id, user_id, title, description,
                    source_type, total_cards, created_at
                ) VALUES (
                    :content_id, :upload_id, :user_id, :title, :description,
                    :source_type, :total_cards, :created_at
                )
            """, content.to_dict())

            for number, draft_chapter in enumerate(card_set.chapters, start=1):
                chapter = Chapter(
                    content_id=content.content_id,
                    chapter_number=number,
                    title=draft_chapter.title or f"Chapter {number}",
                )
                conn.execute("""
                    INSERT INTO chapters (chapter_id, content_id, chapter_number, title)
                    VALUES (:chapter_id, :content_id, :chapter_number, :title)
                """, chapter.to_dict())

                drafts = sorted(
                    enumerate(draft_chapter.cards),
                    key=lambda pair: (PHASES.index(pair[1].type), pair[0])
                )
                for order_index, (_, draft) in enumerate(drafts, start=1):
                    self._insert_card(conn, content.content_id, chapter.chapter_id, order_index, draft)

            if card_set.summary is not None:
                self._insert_card(conn, content.content_id, None, 1, card_set.summary)

        return content

    @staticmethod
    def _insert_card(conn, content_id: str, chapter_id: Optional[str], order_index: int, draft):
        provenance = {'source_chunks': draft.source_chunks} if draft.source_chunks else {}
        card = Card(
            content_id=content_id,
            chapter_id=chapter_id,
            type=draft.type,
            title=draft.title,
            order_index=order_index,
            payload=draft.payload,
            provenance=provenance,
        )
        conn.execute("""
            INSERT INTO cards (
                card_id, content_id, chapter_id, type, title,
                order_index, payload, provenance, created_at
            ) VALUES (
                :card_id, :content_id, :chapter_id, :type, :title,
                :order_index, :payload, :provenance, :created_at
            )
        """, card.to_dict())

    # Content queries

    def get_content(self, content_id: str) -> Optional[Content]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM contents WHERE content_id = ?", (content_id,)).fetchone()
        return Content.from_dict(dict(row)) if row else None

    def get_content_for_upload(self, upload_id: str) -> Optional[Content]:
        """Content already generated for an upload, if any."""
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM contents WHERE upload_id = ?", (upload_id,)).fetchone()
        return Content.from_dict(dict(row)) if row else None

    def get_chapters(self, content_id: str) -> List[Chapter]:
        conn = self._get_connection()
        rows = conn.execute("""
            SELECT * FROM chapters WHERE content_id = ? ORDER BY chapter_number ASC
        """, (content_id,)).fetchall()
        return [Chapter.from_dict(dict(row)) for row in rows]

    def get_chapter(self, chapter_id: str) -> Optional[Chapter]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM chapters WHERE chapter_id = ?", (chapter_id,)).fetchone()
        return Chapter.from_dict(dict(row)) if row else None

    def get_card(self, card_id: str) -> Optional[Card]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM cards WHERE card_id = ?", (card_id,)).fetchone()
        return Card.from_dict(dict(row)) if row else None

    def get_chapter_cards(self, chapter_id: str) -> List[Card]:
        conn = self._get_connection()
        rows = conn.execute("""
            SELECT * FROM cards WHERE chapter_id = ? ORDER BY order_index ASC
        """, (chapter_id,)).fetchall()
        return [Card.from_dict(dict(row)) for row in rows]

    def get_content_cards(self, content_id: str) -> List[Card]:
        conn = self._get_connection()
        rows = conn.execute("""
            SELECT * FROM cards WHERE content_id = ? ORDER BY order_index ASC
        """, (content_id,)).fetchall()
        return [Card.from_dict(dict(row)) for row in rows]

    def get_content_summary_card(self, content_id: str) -> Optional[Card]:
        """The chapterless summary card of a content item, if generated."""
        conn = self._get_connection()
        row = conn.execute("""
            SELECT * FROM cards
            WHERE content_id = ? AND chapter_id IS NULL AND type = 'SUMMARY'
            ORDER BY order_index ASC
            LIMIT 1
        """, (content_id,)).fetchone()
        return Card.from_dict(dict(row)) if row else None

    # Review state

    def get_review_state(self, user_id: str, card_id: str) -> Optional[ReviewState]:
        conn = self._get_connection()
        return self._load_review_state(conn, user_id, card_id)

    def get_review_states(self, user_id: str, card_ids: List[str]) -> Dict[str, ReviewState]:
        """Review states of a user keyed by card id (cards never touched are absent)."""
        if not card_ids:
            return {}
        conn = self._get_connection()
        placeholders = ", ".join("?" for _ in card_ids)
        rows = conn.execute(f"""
            SELECT * FROM review_states
            WHERE user_id = ? AND card_id IN ({placeholders})
        """, [user_id, *card_ids]).fetchall()
        return {row['card_id']: ReviewState.from_dict(dict(row)) for row in rows}

    @staticmethod
    def _load_review_state(conn, user_id: str, card_id: str) -> Optional[ReviewState]:
        row = conn.execute("""
            SELECT * FROM review_states WHERE user_id = ? AND card_id = ?
        """, (user_id, card_id)).fetchone()
        return ReviewState.from_dict(dict(row)) if row else None

    def record_review(
        self,
        card: Card,
        user_id: str,
        update: Callable[[ReviewState], ReviewState],
        action: str,
        xp_gained: int,
        session_id: Optional[str] = None,
        now: Optional[float] = None
    ) -> Tuple[ReviewState, Optional[ChapterProgress]]:
        """
        Apply one card action atomically.

        Loads (or lazily creates) the ReviewState, applies ``update`` to it,
        then writes the new state, the recomputed ChapterProgress, the user's
        XP and a review log entry in the same transaction.

        Returns:
            (new ReviewState, ChapterProgress or None for chapterless cards)
        """
        now = now if now is not None else time.time()

        with self._immediate_transaction() as conn:
            state = self._load_review_state(conn, user_id, card.card_id)
            if state is None:
                state = ReviewState(user_id=user_id, card_id=card.card_id)

            new_state = update(state)

            conn.execute("""
                INSERT OR REPLACE INTO review_states (
                    user_id, card_id, status, attempts, is_known, review_count,
                    streak, difficulty, interval, repetitions, next_review, last_reviewed
                ) VALUES (
                    :user_id, :card_id, :status, :attempts, :is_known, :review_count,
                    :streak, :difficulty, :interval, :repetitions, :next_review, :last_reviewed
                )
            """, new_state.to_dict())

            progress = None
            if card.chapter_id is not None:
                progress = self._write_chapter_progress(conn, user_id, card.chapter_id, now)

            conn.execute("""
                INSERT INTO users (user_id, xp, last_active) VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET xp = xp + excluded.xp, last_active = excluded.last_active
            """, (user_id, xp_gained, now))

            conn.execute("""
                INSERT INTO review_log (user_id, card_id, session_id, action, xp_gained, reviewed_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (user_id, card.card_id, session_id, action, xp_gained, now))

        return new_state, progress

    # Chapter progress (derived)

    @staticmethod
    def _compute_chapter_progress(conn, user_id: str, chapter_id: str) -> ChapterProgress:
        rows = conn.execute("""
            SELECT c.type AS type,
                   COUNT(*) AS total,
                   SUM(CASE WHEN rs.status = 'completed' THEN 1 ELSE 0 END) AS completed
            FROM cards c
            LEFT JOIN review_states rs
                   ON rs.card_id = c.card_id AND rs.user_id = ?
            WHERE c.chapter_id = ?
            GROUP BY c.type
        """, (user_id, chapter_id)).fetchall()

        progress = ChapterProgress(user_id=user_id, chapter_id=chapter_id)
        for row in rows:
            count = progress.phase(CardType(row['type']))
            count.total = row['total']
            count.completed = row['completed'] or 0
        progress.completion_percentage = progress.compute_percentage()
        return progress

    def _write_chapter_progress(self, conn, user_id: str, chapter_id: str, now: float) -> ChapterProgress:
        progress = self._compute_chapter_progress(conn, user_id, chapter_id)
        progress.last_accessed = now
        conn.execute("""
            INSERT OR REPLACE INTO chapter_progress (
                user_id, chapter_id,
                flashcards_completed, flashcards_total,
                quizzes_completed, quizzes_total,
                summaries_completed, summaries_total,
                completion_percentage, last_accessed
            ) VALUES (
                :user_id, :chapter_id,
                :flashcards_completed, :flashcards_total,
                :quizzes_completed, :quizzes_total,
                :summaries_completed, :summaries_total,
                :completion_percentage, :last_accessed
            )
        """, progress.to_dict())
        return progress

    def recompute_chapter_progress(
        self,
        user_id: str,
        chapter_id: str,
        now: Optional[float] = None
    ) -> ChapterProgress:
        """Rebuild and store a chapter's progress from the review states."""
        with self._transaction() as conn:
            return self._write_chapter_progress(
                conn, user_id, chapter_id, now if now is not None else time.time()
            )

    def get_chapter_progress(self, user_id: str, chapter_id: str) -> Optional[ChapterProgress]:
        conn = self._get_connection()
        row = conn.execute("""
            SELECT * FROM chapter_progress WHERE user_id = ? AND chapter_id = ?
        """, (user_id, chapter_id)).fetchone()
        return ChapterProgress.from_dict(dict(row)) if row else None

    def compute_chapter_progress(self, user_id: str, chapter_id: str) -> ChapterProgress:
        """Progress derived from current review states, without writing it."""
        conn = self._get_connection()
        progress = self._compute_chapter_progress(conn, user_id, chapter_id)
        stored = self.get_chapter_progress(user_id, chapter_id)
        if stored is not None:
            progress.last_accessed = stored.last_accessed
        return progress

    # Users, history and due cards

    def get_xp(self, user_id: str) -> int:
        conn = self._get_connection()
        row = conn.execute("SELECT xp FROM users WHERE user_id = ?", (user_id,)).fetchone()
        return row['xp'] if row else 0

    def get_review_history(self, user_id: str, card_id: str) -> List[Dict[str, Any]]:
        """Review log entries for a card, oldest first."""
        conn = self._get_connection()
        rows = conn.execute("""
            SELECT * FROM review_log
            WHERE user_id = ? AND card_id = ?
            ORDER BY reviewed_at ASC, id ASC
        """, (user_id, card_id)).fetchall()
        return [dict(row) for row in rows]

    def get_due_card_ids(
        self,
        user_id: str,
        until: float,
        content_id: Optional[str] = None
    ) -> List[str]:
        """Ids of reviewed cards due by ``until``, soonest first."""
        conn = self._get_connection()

        query = """
            SELECT rs.card_id FROM review_states rs
            JOIN cards c ON c.card_id = rs.card_id
            WHERE rs.user_id = ? AND rs.next_review IS NOT NULL AND rs.next_review <= ?
        """
        params: List[Any] = [user_id, until]

        if content_id is not None:
            query += " AND c.content_id = ?"
            params.append(content_id)

        query += " ORDER BY rs.next_review ASC"

        return [row['card_id'] for row in conn.execute(query, params).fetchall()]

    def get_user_statistics(self, user_id: str) -> Dict[str, Any]:
        """XP, level and review counts for a user."""
        conn = self._get_connection()
        xp = self.get_xp(user_id)
        row = conn.execute("""
            SELECT COUNT(*) AS reviewed,
                   SUM(CASE WHEN is_known = 1 THEN 1 ELSE 0 END) AS known
            FROM review_states
            WHERE user_id = ?
        """, (user_id,)).fetchone()

        return {
            'xp': xp,
            'level': xp // 100 + 1,
            'cards_reviewed': row['reviewed'] or 0,
            'cards_known': row['known'] or 0,
        }

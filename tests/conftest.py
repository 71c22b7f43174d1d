"""
Shared pytest fixtures and configuration for MindScroll tests
"""
import sys
import tempfile
import threading
import time
from pathlib import Path

import fitz
import pytest
from ebooklib import epub

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from mindscroll.config import PipelineConfig
from mindscroll.core import CardDraft, CardSet, ChapterDraft, CardGenerator
from mindscroll.core import TransientGenerationError, PermanentGenerationError
from mindscroll.jobs import JobStorage, WorkQueue, BackoffPolicy
from mindscroll.learning import CardType, LearningStorage


def flashcard(title, front=None, back=None):
    return CardDraft(CardType.FLASHCARD, title, {'front': front or f"{title}?", 'back': back or f"{title}."})


def quiz(title):
    return CardDraft(CardType.QUIZ, title, {
        'question': f"Which is {title}?",
        'choices': ['A', 'B', 'C'],
        'correct_answer': 'B',
        'explanation': 'B is right.',
    })


def summary(title):
    return CardDraft(CardType.SUMMARY, title, {'body': f"Summary of {title}."})


def make_card_set(chapters=None, with_content_summary=False, title="Test Content"):
    """CardSet with one chapter [F1, F2, Q1, S1] unless chapters are given."""
    if chapters is None:
        chapters = [ChapterDraft("Chapter 1", [flashcard("F1"), flashcard("F2"), quiz("Q1"), summary("S1")])]
    return CardSet(
        title=title,
        chapters=chapters,
        summary=summary("Whole book") if with_content_summary else None,
    )


class StaticGenerator(CardGenerator):
    """Returns the same card set for any input and records its calls."""

    def __init__(self, card_set=None):
        self.card_set = card_set
        self.calls = []
        self._lock = threading.Lock()

    def generate(self, source_text, source_type, config):
        with self._lock:
            self.calls.append((source_text, source_type, config))
        return self.card_set if self.card_set is not None else make_card_set()


class ScriptedGenerator(CardGenerator):
    """
    Raises the scripted exceptions in order, then succeeds.

    Example: ScriptedGenerator([TransientGenerationError("down")] * 2)
    fails twice and succeeds on the third call.
    """

    def __init__(self, failures, card_set=None):
        self.failures = list(failures)
        self.card_set = card_set
        self.calls = 0
        self._lock = threading.Lock()

    def generate(self, source_text, source_type, config):
        with self._lock:
            self.calls += 1
            failure = self.failures.pop(0) if self.failures else None
        if failure is not None:
            raise failure
        return self.card_set if self.card_set is not None else make_card_set()


class SlowGenerator(CardGenerator):
    """
    Sleeps longer than any test timeout before answering.

    With ``slow_calls`` set, only that many calls sleep and later ones
    answer at once.
    """

    def __init__(self, seconds=2.0, slow_calls=None):
        self.seconds = seconds
        self.slow_calls = slow_calls
        self.calls = 0
        self._lock = threading.Lock()

    def generate(self, source_text, source_type, config):
        with self._lock:
            self.calls += 1
            slow = self.slow_calls is None or self.calls <= self.slow_calls
        if slow:
            time.sleep(self.seconds)
        return make_card_set()


@pytest.fixture
def temp_dir():
    """Temporary directory for test files"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def pipeline_config(temp_dir):
    """Fast pipeline settings: one slot, near-zero backoff and polling"""
    return PipelineConfig(
        data_dir=str(temp_dir / "data"),
        concurrency=1,
        poll_interval=0.05,
        max_attempts=3,
        backoff_type='fixed',
        backoff_delay=0.01,
        lease_timeout=30,
        generation_timeout=5,
        prune_interval=3600,
    )


@pytest.fixture
def job_storage(temp_dir):
    storage = JobStorage(str(temp_dir / "jobs.db"))
    yield storage
    storage.close()


@pytest.fixture
def work_queue(temp_dir):
    queue = WorkQueue(
        str(temp_dir / "queue.db"),
        default_backoff=BackoffPolicy('fixed', 0.0),
        poll_interval=0.05,
    )
    yield queue
    queue.close()


@pytest.fixture
def learning_storage(temp_dir):
    storage = LearningStorage(str(temp_dir / "learning.db"))
    yield storage
    storage.close()


@pytest.fixture
def sample_content(learning_storage):
    """One chapter with cards [F1, F2, Q1, S1]"""
    return learning_storage.save_card_set(make_card_set(), user_id="author", upload_id="upload-1")


@pytest.fixture
def text_file(temp_dir):
    path = temp_dir / 'notes.txt'
    path.write_text("Photosynthesis converts light energy into chemical energy.\n\nIt happens in chloroplasts.")
    return path


@pytest.fixture
def simple_epub(temp_dir):
    """Create a simple EPUB file for testing"""
    book = epub.EpubBook()

    # Metadata
    book.set_identifier('test-simple-001')
    book.set_title('Simple Test Book')
    book.set_language('en')
    book.add_author('Test Author')

    c1 = epub.EpubHtml(title='Chapter 1', file_name='chapter1.xhtml', lang='en')
    c1.content = '<html><body><h1>Chapter 1</h1><p>Cells are the basic unit of life.</p></body></html>'

    c2 = epub.EpubHtml(title='Chapter 2', file_name='chapter2.xhtml', lang='en')
    c2.content = '<html><body><h1>Chapter 2</h1><p>Mitochondria produce energy.</p></body></html>'

    book.add_item(c1)
    book.add_item(c2)
    book.toc = (
        epub.Link('chapter1.xhtml', 'Chapter 1', 'ch1'),
        epub.Link('chapter2.xhtml', 'Chapter 2', 'ch2'),
    )
    book.add_item(epub.EpubNcx())
    book.add_item(epub.EpubNav())
    book.spine = ['nav', c1, c2]

    epub_path = temp_dir / 'simple_test.epub'
    epub.write_epub(str(epub_path), book)

    return epub_path


@pytest.fixture
def simple_pdf(temp_dir):
    """Create a two-page PDF with PyMuPDF"""
    doc = fitz.open()
    for text in ("Gravity pulls objects together.", "Inertia resists changes in motion."):
        page = doc.new_page()
        page.insert_text((72, 72), text)
    pdf_path = temp_dir / 'physics.pdf'
    doc.save(str(pdf_path))
    doc.close()
    return pdf_path

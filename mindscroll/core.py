"""Core pipeline contracts for MindScroll.

This module contains source text extraction (PDF, EPUB, plain text files,
web pages and inline text), the contract of the external card generation
capability, and the error taxonomy the pipeline uses to decide between
retrying a job and failing it outright.
"""

# Standard library imports
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any

# Third-party imports
import requests
from bs4 import BeautifulSoup
from ebooklib import epub, ITEM_DOCUMENT
import pymupdf4llm
import fitz

from .learning.models import CardType

USER_AGENT = "MindScroll Content Processor"

# Containers tried in order when extracting readable text from a web page
CONTENT_SELECTORS = [
    'article',
    'main',
    '.content',
    '.post-content',
    '.entry-content',
    '.article-content',
]

# Minimum length for a container to count as the page's main content
MIN_CONTENT_LENGTH = 200

REQUIRED_PAYLOAD_FIELDS = {
    CardType.FLASHCARD: ('front', 'back'),
    CardType.QUIZ: ('question', 'choices', 'correct_answer'),
    CardType.SUMMARY: ('body',),
}


# Error taxonomy

class PipelineError(Exception):
    """Base class for errors raised while processing an upload."""
    retryable = True


class SourceError(PipelineError):
    """The uploaded source is missing, unreadable or empty. Never retried."""
    retryable = False


class GenerationError(PipelineError):
    """Failure reported by the card generation capability."""

    def __init__(self, message: str, transient: bool = True):
        super().__init__(message)
        self.transient = transient

    @property
    def retryable(self) -> bool:
        return self.transient


class TransientGenerationError(GenerationError):
    """Network or timeout failure talking to the generator."""

    def __init__(self, message: str):
        super().__init__(message, transient=True)


class PermanentGenerationError(GenerationError):
    """The generator rejected the input or returned unusable output."""

    def __init__(self, message: str):
        super().__init__(message, transient=False)


def is_retryable(error: BaseException) -> bool:
    """
    Classify an exception raised while processing a job.

    Permanent errors fail the job immediately; anything else goes back to the
    queue's retry policy.
    """
    if isinstance(error, PipelineError):
        return error.retryable
    if isinstance(error, (TimeoutError, ConnectionError, requests.RequestException)):
        return True
    if isinstance(error, (ValueError, TypeError, KeyError, UnicodeDecodeError)):
        return False
    return True


# Sources

class SourceType(str, Enum):
    """Kinds of upload the pipeline can turn into cards."""
    PDF = "pdf"
    EPUB = "epub"
    TXT = "txt"
    URL = "url"
    TEXT = "text"

    @property
    def is_file(self) -> bool:
        return self in (SourceType.PDF, SourceType.EPUB, SourceType.TXT)


@dataclass
class Section:
    """A titled part of a source document (a PDF chapter, an EPUB document)."""
    title: str
    content: str
    order: int


@dataclass
class SourceDocument:
    """Text extracted from an upload, ready to be sent to the generator."""
    source_type: SourceType
    source_ref: str
    title: str
    text: str
    sections: List[Section] = field(default_factory=list)

    @property
    def word_count(self) -> int:
        return len(self.text.split())


def normalize_whitespace(text: str) -> str:
    """Collapse runs of spaces and blank lines."""
    text = re.sub(r'[ \t\r\f\v]+', ' ', text)
    text = re.sub(r'\n\s*\n+', '\n\n', text)
    return text.strip()


class SourceExtractor:
    """Extracts plain text from uploaded sources.

    Raises SourceError for anything that cannot be read; network failures
    while fetching a URL propagate as requests exceptions so the job is
    retried.
    """

    def __init__(self, url_timeout: float = 10.0):
        self.url_timeout = url_timeout

    def extract(
        self,
        source_type: str,
        source_ref: str,
        title: Optional[str] = None
    ) -> SourceDocument:
        """Extract text from a source.

        Args:
            source_type: One of the SourceType values
            source_ref: File path, URL or the raw text itself
            title: Title override

        Returns:
            SourceDocument with non-empty text

        Raises:
            SourceError: If the source is unsupported, unreadable or empty
        """
        try:
            kind = SourceType(source_type)
        except ValueError:
            raise SourceError(f"Unsupported source type: {source_type}")

        if kind.is_file and not os.path.exists(source_ref):
            raise SourceError(f"Source file not found: {source_ref}")

        if kind == SourceType.PDF:
            document = self._extract_pdf(source_ref)
        elif kind == SourceType.EPUB:
            document = self._extract_epub(source_ref)
        elif kind == SourceType.TXT:
            document = self._extract_txt(source_ref)
        elif kind == SourceType.URL:
            document = self._extract_url(source_ref)
        else:
            text = normalize_whitespace(source_ref or "")
            document = SourceDocument(kind, "inline", "Untitled", text)

        if not document.text:
            raise SourceError(f"No readable text found in {kind.value} source")

        if title:
            document.title = title
        if not document.sections:
            document.sections = [Section(document.title, document.text, 1)]

        return document

    def _extract_pdf(self, path: str) -> SourceDocument:
        """Extract page text with PyMuPDF, falling back to markdown conversion."""
        doc = None
        try:
            doc = fitz.open(path)
            pages = [page.get_text() for page in doc]
            sections = self._pdf_sections_from_toc(doc, pages)
            title = (doc.metadata or {}).get('title') or os.path.splitext(os.path.basename(path))[0]
        except (RuntimeError, ValueError) as e:
            raise SourceError(f"Unreadable PDF {path}: {e}")
        finally:
            if doc is not None:
                doc.close()

        text = normalize_whitespace("\n\n".join(pages))
        if not text:
            # Scanned or oddly encoded PDFs sometimes only yield text this way
            try:
                text = normalize_whitespace(pymupdf4llm.to_markdown(path))
            except (RuntimeError, ValueError) as e:
                raise SourceError(f"Unreadable PDF {path}: {e}")

        return SourceDocument(SourceType.PDF, path, title, text, sections)

    @staticmethod
    def _pdf_sections_from_toc(doc, pages: List[str]) -> List[Section]:
        """Split page text into level-1 table of contents chapters."""
        markers = []
        seen_pages = set()
        for level, title, page in doc.get_toc():
            title = title.strip()
            if level == 1 and title and page not in seen_pages:
                markers.append((title, page))
                seen_pages.add(page)

        sections = []
        for i, (title, start_page) in enumerate(markers):
            end_page = markers[i + 1][1] - 1 if i < len(markers) - 1 else len(pages)
            content = normalize_whitespace("\n".join(pages[start_page - 1:end_page]))
            if content:
                sections.append(Section(title, content, len(sections) + 1))
        return sections

    def _extract_epub(self, path: str) -> SourceDocument:
        """Extract document text from an EPUB, one section per spine document."""
        try:
            book = epub.read_epub(path)
        except Exception as e:
            raise SourceError(f"Unreadable EPUB {path}: {e}")

        titles = book.get_metadata('DC', 'title')
        title = titles[0][0] if titles and titles[0] else os.path.splitext(os.path.basename(path))[0]

        sections = []
        for item in book.get_items_of_type(ITEM_DOCUMENT):
            soup = BeautifulSoup(item.get_body_content(), "html.parser")
            content = normalize_whitespace(soup.get_text("\n"))
            if not content:
                continue
            heading = soup.find(['h1', 'h2'])
            section_title = heading.get_text(strip=True) if heading else f"Section {len(sections) + 1}"
            sections.append(Section(section_title, content, len(sections) + 1))

        text = "\n\n".join(section.content for section in sections)
        return SourceDocument(SourceType.EPUB, path, title, text, sections)

    def _extract_txt(self, path: str) -> SourceDocument:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                text = f.read()
        except UnicodeDecodeError as e:
            raise SourceError(f"Text file {path} is not valid UTF-8: {e}")

        title = os.path.splitext(os.path.basename(path))[0]
        return SourceDocument(SourceType.TXT, path, title, normalize_whitespace(text))

    def _extract_url(self, url: str) -> SourceDocument:
        """Fetch a web page and keep its readable text."""
        if not url.startswith(('http://', 'https://')):
            raise SourceError(f"Unsupported URL: {url}")

        response = requests.get(
            url,
            timeout=self.url_timeout,
            headers={'User-Agent': USER_AGENT}
        )
        if 400 <= response.status_code < 500:
            raise SourceError(f"URL {url} returned HTTP {response.status_code}")
        response.raise_for_status()

        soup = BeautifulSoup(response.text, "html.parser")
        for tag in soup(['script', 'style', 'nav', 'footer', 'header', 'aside']):
            tag.decompose()

        content = ""
        for selector in CONTENT_SELECTORS:
            element = soup.select_one(selector)
            if element is not None:
                candidate = element.get_text("\n").strip()
                if len(candidate) > MIN_CONTENT_LENGTH:
                    content = candidate
                    break

        if not content and soup.body is not None:
            content = soup.body.get_text("\n")

        title_tag = soup.find('title')
        h1 = soup.find('h1')
        if title_tag and title_tag.get_text(strip=True):
            title = title_tag.get_text(strip=True)
        elif h1 and h1.get_text(strip=True):
            title = h1.get_text(strip=True)
        else:
            title = "Untitled"

        return SourceDocument(SourceType.URL, url, title, normalize_whitespace(content))


# Card generation contract

@dataclass
class CardDraft:
    """One generated card before it is persisted."""
    type: CardType
    title: str
    payload: Dict[str, Any]
    source_chunks: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CardDraft':
        try:
            card_type = CardType(str(data.get('type', '')).upper())
        except ValueError:
            raise PermanentGenerationError(f"Unknown card type: {data.get('type')!r}")

        payload = dict(data.get('payload') or {})
        # Generators commonly return type-specific fields at the top level
        for key in REQUIRED_PAYLOAD_FIELDS[card_type] + ('explanation',):
            if key not in payload and key in data:
                payload[key] = data[key]

        return cls(
            type=card_type,
            title=data.get('title') or "",
            payload=payload,
            source_chunks=list(data.get('source_chunks') or []),
        )

    def validate(self):
        """Raise PermanentGenerationError if the payload is incomplete."""
        missing = [key for key in REQUIRED_PAYLOAD_FIELDS[self.type] if not self.payload.get(key)]
        if missing:
            raise PermanentGenerationError(
                f"{self.type.value} card {self.title!r} is missing {', '.join(missing)}"
            )
        if self.type == CardType.QUIZ:
            choices = self.payload['choices']
            if not isinstance(choices, list) or len(choices) < 2:
                raise PermanentGenerationError(f"Quiz card {self.title!r} needs at least two choices")
            if self.payload['correct_answer'] not in choices:
                raise PermanentGenerationError(f"Quiz card {self.title!r} answer is not one of its choices")


@dataclass
class ChapterDraft:
    """A generated chapter and its cards."""
    title: str
    cards: List[CardDraft] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChapterDraft':
        return cls(
            title=data.get('title') or "",
            cards=[CardDraft.from_dict(card) for card in data.get('cards') or []],
        )


@dataclass
class CardSet:
    """
    Structured output of the card generator.

    Chapters hold the flashcard, quiz and summary cards; ``summary`` is the
    optional whole-content summary card that belongs to no chapter.
    """
    title: str
    chapters: List[ChapterDraft] = field(default_factory=list)
    summary: Optional[CardDraft] = None
    description: str = ""

    @property
    def total_cards(self) -> int:
        return sum(len(chapter.cards) for chapter in self.chapters) + (1 if self.summary else 0)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CardSet':
        """Build from the generator's JSON-like output."""
        if not isinstance(data, dict):
            raise PermanentGenerationError(f"Card generation returned invalid format: {type(data).__name__}")

        chapters = [ChapterDraft.from_dict(chapter) for chapter in data.get('chapters') or []]

        # Flat card lists (no chapters) become a single chapter
        if not chapters and data.get('cards'):
            chapters = [ChapterDraft(
                title=data.get('title') or "Chapter 1",
                cards=[CardDraft.from_dict(card) for card in data['cards']],
            )]

        summary = CardDraft.from_dict(data['summary']) if data.get('summary') else None

        return cls(
            title=data.get('title') or "Untitled",
            chapters=chapters,
            summary=summary,
            description=data.get('description') or "",
        )

    def validate(self):
        """Raise PermanentGenerationError unless this is a usable card set."""
        if self.total_cards == 0:
            raise PermanentGenerationError("Card generation produced no cards")
        for chapter in self.chapters:
            for card in chapter.cards:
                card.validate()
        if self.summary is not None:
            if self.summary.type != CardType.SUMMARY:
                raise PermanentGenerationError("Content summary card must be a SUMMARY card")
            self.summary.validate()


class CardGenerator:
    """
    Interface of the external card generation capability.

    Implementations turn raw text into a CardSet (or an equivalent dict) and
    raise TransientGenerationError or PermanentGenerationError on failure.

    ``config`` carries the caller's generation options plus ``title`` and
    ``sections`` (a list of ``{'title', 'order', 'content'}`` dicts, one per
    PDF chapter or EPUB document) so that chapters can follow the source.
    """

    def generate(self, source_text: str, source_type: str, config: Dict[str, Any]) -> CardSet:
        raise NotImplementedError

"""
Source Adapter Base
===================

Adapters normalize one kind of input into ``ExtractedContent`` items
(content + provenance metadata) before chunking. They never embed.

Blocking work (file reads, HTTP, git) runs in a worker thread. Any failure
surfaces as AdapterError and nothing is enqueued for that input.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Tuple

from ..errors import AdapterError, InvalidArgument
from ..models import IngestionSource, SourceType, VectorMetadata

logger = logging.getLogger(__name__)


MAX_TITLE_LINE = 100

EXTENSION_TO_MIME = {
    ".pdf": "application/pdf",
    ".html": "text/html",
    ".htm": "text/html",
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".txt": "text/plain",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}

# Stopwords per language; the language with the most hits wins
_LANGUAGE_HINTS = {
    "en": {"the", "and", "is", "to", "of", "in", "that", "with"},
    "de": {"der", "die", "das", "und", "ist", "zu", "von", "nicht"},
    "fr": {"le", "la", "les", "et", "est", "des", "une", "pour"},
    "es": {"el", "los", "las", "y", "es", "en", "por", "una"},
}

_GITHUB_URL = re.compile(r"github\.com[/:]([^/]+)/([^/]+?)(?:\.git)?/?$")
_GITHUB_SHORT = re.compile(r"^([^/\s:]+)/([^/\s]+)$")


@dataclass
class ExtractedContent:
    """One normalized unit of text, ready for chunking."""
    content: str
    metadata: VectorMetadata
    source_type: SourceType

    @property
    def source_path(self) -> str:
        return self.metadata.source_path


class SourceAdapter(ABC):
    """Base class for all adapters."""

    source_types: Tuple[SourceType, ...] = ()

    async def extract(self, source: IngestionSource) -> List[ExtractedContent]:
        """
        Extract normalized content from a source.

        Raises:
            AdapterError: The input could not be read or parsed
        """
        try:
            return await asyncio.to_thread(self.extract_sync, source)
        except AdapterError:
            raise
        except Exception as e:
            logger.warning(f"{type(self).__name__} failed on {source.location}: {e}")
            raise AdapterError(
                f"Could not extract {source.source_type.value} from {source.location}: {e}",
                cause=e,
                source=source.location,
            ) from e

    @abstractmethod
    def extract_sync(self, source: IngestionSource) -> List[ExtractedContent]:
        """Blocking extraction, run in a worker thread."""

    def build_metadata(
        self,
        source: IngestionSource,
        title: str,
        source_path: str,
        tags: Optional[List[str]] = None,
        **fields: Any,
    ) -> VectorMetadata:
        """
        Metadata for one extracted item.

        Common VectorMetadata fields are passed by keyword; everything else
        lands in ``extra``. Caller-supplied ``source.metadata`` is merged
        last into ``extra`` without overriding provenance.
        """
        common_names = {
            "language", "repo_url", "commit_hash", "file_path", "mime_type",
        }
        common = {k: v for k, v in fields.items() if k in common_names and v is not None}
        extra = {k: v for k, v in fields.items() if k not in common_names and v is not None}
        for key, value in source.metadata.items():
            extra.setdefault(key, value)

        merged_tags = list(dict.fromkeys(list(source.tags) + list(tags or [])))
        return VectorMetadata(
            title=source.title or title,
            source_path=source_path,
            tags=merged_tags,
            extra=extra,
            **common,
        )


def extract_title(content: str, fallback: str) -> str:
    """
    Pick a title: first markdown heading, else a short first line, else fallback
    (usually the file stem).
    """
    heading = re.search(r"^#{1,6}\s+(.+)$", content, re.MULTILINE)
    if heading:
        return heading.group(1).strip()

    for line in content.splitlines():
        line = line.strip()
        if line:
            if len(line) < MAX_TITLE_LINE:
                return line
            break

    return fallback


def count_words(text: str) -> int:
    return len(text.split())


def detect_language(text: str) -> str:
    """Stopword heuristic over the first 1000 characters."""
    words = re.findall(r"[^\W\d_]+", text[:1000].lower())
    if not words:
        return "unknown"

    best, best_hits = "unknown", 0
    for language, hints in _LANGUAGE_HINTS.items():
        hits = sum(1 for w in words if w in hints)
        if hits > best_hits:
            best, best_hits = language, hits
    return best if best_hits >= 2 else "unknown"


def mime_for(path: str) -> Optional[str]:
    return EXTENSION_TO_MIME.get(Path(path).suffix.lower())


def clean_text(text: str) -> str:
    """Normalize line endings and collapse runs of blank lines."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def parse_repo_url(url: str) -> Tuple[str, str]:
    """
    Parse a GitHub URL or ``owner/name`` shorthand.

    Returns:
        (owner, name)

    Raises:
        InvalidArgument: Not a recognizable repository reference
    """
    url = (url or "").strip()
    for pattern in (_GITHUB_URL, _GITHUB_SHORT):
        match = pattern.search(url)
        if match:
            return match.group(1), match.group(2)
    raise InvalidArgument(f"Not a GitHub repository URL: {url!r}")


def canonical_repo_url(url: str) -> str:
    """``https://github.com/owner/name`` for any accepted repository reference."""
    owner, name = parse_repo_url(url)
    return f"https://github.com/{owner}/{name}"


def read_text_input(source: IngestionSource, encoding: str = "utf-8") -> Optional[str]:
    """Inline content as text, when the caller provided any."""
    if source.content is None:
        return None
    if isinstance(source.content, bytes):
        return source.content.decode(encoding, errors="replace")
    return str(source.content)


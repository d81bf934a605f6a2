"""
RAG Chunker
===========

Splits extracted content into bounded, overlapping segments for embedding.

Rules:
- Each segment is at most max_chunk_size characters
- The last overlap_size characters of a segment open the next one
- Prose breaks at paragraph > line > sentence > token boundaries
- Code breaks at function/class definitions, then line windows
- Stable chunking (same input + config = same segments)
"""

import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from .errors import ConfigurationError
from .models import SourceType

logger = logging.getLogger(__name__)


PROSE_SEPARATORS = ("\n\n", "\n", ". ", " ")

# Definition lines for the languages the repository adapter indexes
CODE_BOUNDARY = re.compile(
    r"^[ \t]*(?:"
    r"(?:export\s+)?(?:default\s+)?(?:async\s+)?(?:function\*?|class|interface|enum|type)\s"
    r"|(?:async\s+)?def\s"
    r"|(?:pub(?:\([^)]*\))?\s+)?(?:async\s+)?(?:fn|impl|struct|enum|trait|mod)\s"
    r"|func\s"
    r"|fun\s"
    r"|(?:module|namespace|template|typedef)\b"
    r"|(?:public|private|protected|internal)\s"
    r"|(?:const|let)\s+\w+\s*=\s*(?:async\s*)?\("
    r"|@\w+"
    r")",
    re.MULTILINE,
)

DIFF_BOUNDARY = re.compile(r"^(?:diff --git |@@ )", re.MULTILINE)


@dataclass
class ChunkConfig:
    """Chunking configuration (sizes in characters)."""
    max_chunk_size: int = 1000
    overlap_size: int = 200
    code_window_lines: int = 60

    def __post_init__(self):
        if self.max_chunk_size <= 0:
            raise ConfigurationError("max_chunk_size must be positive")
        if self.overlap_size < 0:
            raise ConfigurationError("overlap_size cannot be negative")
        if self.overlap_size >= self.max_chunk_size:
            raise ConfigurationError(
                f"overlap_size ({self.overlap_size}) must be smaller than "
                f"max_chunk_size ({self.max_chunk_size})"
            )
        if self.code_window_lines <= 0:
            raise ConfigurationError("code_window_lines must be positive")

    @classmethod
    def from_settings(cls, chunking) -> "ChunkConfig":
        """Build from a ChunkingConfig settings section."""
        return cls(
            max_chunk_size=chunking.max_chunk_size,
            overlap_size=chunking.overlap_size,
            code_window_lines=chunking.code_window_lines,
        )


BoundaryFinder = Callable[[str, int, int, ChunkConfig], int]


class RAGChunker:
    """
    Splits content into overlapping segments.

    The window advances to ``cut - overlap_size`` after each segment, so the
    overlap is an exact character copy. A boundary is only accepted when the
    segment it produces is longer than the overlap, which guarantees progress.

    Whitespace-only segments are dropped. This only happens inside a
    whitespace run longer than the window, and the segment after a dropped
    one starts with whitespace rather than the last kept segment's tail.
    """

    def __init__(self, config: Optional[ChunkConfig] = None):
        self.config = config or ChunkConfig()

    def chunk(
        self,
        content: str,
        content_type: Union[SourceType, str] = SourceType.DOCUMENT,
        config: Optional[ChunkConfig] = None,
    ) -> List[str]:
        """
        Split content into segments.

        Args:
            content: Extracted text
            content_type: SourceType of the content (selects boundary rules)
            config: Override for this call

        Returns:
            Ordered list of segments (empty for blank content)
        """
        cfg = config or self.config
        text = self.normalize(content)
        if not text:
            return []

        if len(text) <= cfg.max_chunk_size:
            return [text]

        finder = self._boundary_finder(SourceType(content_type))
        segments: List[str] = []
        pos = 0
        n = len(text)

        while True:
            end = min(pos + cfg.max_chunk_size, n)
            cut = n if end >= n else finder(text, pos, end, cfg)

            segment = text[pos:cut]
            if segment.strip():
                segments.append(segment)

            if cut >= n:
                break
            pos = cut - cfg.overlap_size

        logger.debug(
            f"Chunked {n} chars of {SourceType(content_type).value} into {len(segments)} segments"
        )
        return segments

    @staticmethod
    def normalize(content: str) -> str:
        if not content:
            return ""
        return content.replace("\r\n", "\n").replace("\r", "\n").strip()

    def _boundary_finder(self, content_type: SourceType) -> BoundaryFinder:
        if content_type == SourceType.REPO_CODE:
            return self._code_boundary
        if content_type == SourceType.REPO_DIFF:
            return self._diff_boundary
        return self._prose_boundary

    @staticmethod
    def _min_cut(pos: int, cfg: ChunkConfig, fraction: float) -> int:
        """Smallest acceptable cut position for the window starting at pos."""
        return pos + max(cfg.overlap_size + 1, int(cfg.max_chunk_size * fraction))

    def _prose_boundary(self, text: str, pos: int, end: int, cfg: ChunkConfig) -> int:
        # Only separators in the second half of the window count
        min_cut = self._min_cut(pos, cfg, 0.5)
        for separator in PROSE_SEPARATORS:
            idx = text.rfind(separator, pos, end)
            if idx == -1:
                continue
            cut = idx + len(separator)
            if cut > min_cut:
                return cut
        return end

    def _pattern_boundary(
        self,
        pattern: "re.Pattern",
        text: str,
        pos: int,
        end: int,
        cfg: ChunkConfig,
    ) -> Optional[int]:
        """Start of the last matching line inside the window, if acceptable."""
        min_cut = self._min_cut(pos, cfg, 0.25)
        best = None
        for match in pattern.finditer(text, pos, end):
            if match.start() >= min_cut:
                best = match.start()
        return best

    def _line_fallback(self, text: str, pos: int, end: int, cfg: ChunkConfig) -> int:
        min_cut = pos + cfg.overlap_size + 1

        # Fixed line window
        idx = pos
        for _ in range(cfg.code_window_lines):
            found = text.find("\n", idx, end)
            if found == -1:
                break
            idx = found + 1
        else:
            if idx >= min_cut:
                return idx

        # Last line break in the window
        last_newline = text.rfind("\n", pos, end)
        if last_newline != -1 and last_newline + 1 >= min_cut:
            return last_newline + 1

        return end

    def _code_boundary(self, text: str, pos: int, end: int, cfg: ChunkConfig) -> int:
        cut = self._pattern_boundary(CODE_BOUNDARY, text, pos, end, cfg)
        if cut is not None:
            return cut
        return self._line_fallback(text, pos, end, cfg)

    def _diff_boundary(self, text: str, pos: int, end: int, cfg: ChunkConfig) -> int:
        cut = self._pattern_boundary(DIFF_BOUNDARY, text, pos, end, cfg)
        if cut is not None:
            return cut
        return self._line_fallback(text, pos, end, cfg)


def hash_content(content: str) -> str:
    """
    Generate SHA256 hash of content for deduplication.
    """
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def estimate_tokens(text: str, chars_per_token: float = 4.0) -> int:
    """
    Estimate token count for text.
    """
    return int(len(text) / chars_per_token)

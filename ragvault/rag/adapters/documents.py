"""
Document Adapter
================

Local files (or bytes the caller already holds):

- .md / .markdown / .txt: decoded as UTF-8
- .html / .htm: BeautifulSoup text extraction
- .pdf: pypdf, page by page
- .docx: python-docx paragraphs and table cells
"""

import io
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..errors import AdapterError
from ..models import IngestionSource, SourceType
from .base import (
    EXTENSION_TO_MIME,
    ExtractedContent,
    SourceAdapter,
    clean_text,
    count_words,
    detect_language,
    extract_title,
)
from .web import html_to_text

logger = logging.getLogger(__name__)


MAX_FILE_SIZE = 50 * 1024 * 1024  # 50 MB


class DocumentAdapter(SourceAdapter):
    """Documents by file path."""

    source_types = (SourceType.DOCUMENT,)

    def __init__(self, max_file_size: int = MAX_FILE_SIZE):
        self.max_file_size = max_file_size

    def _read_bytes(self, source: IngestionSource) -> Tuple[bytes, str]:
        """Raw bytes and the source path used as identity."""
        if source.content is not None:
            data = source.content
            if isinstance(data, str):
                data = data.encode("utf-8")
            return data, source.location

        path = Path(source.location).expanduser()
        if not path.is_file():
            raise AdapterError(f"File not found: {source.location}", source=source.location)
        size = path.stat().st_size
        if size > self.max_file_size:
            raise AdapterError(
                f"File too large: {size} bytes (max {self.max_file_size})",
                source=source.location,
            )
        return path.read_bytes(), str(path.resolve())

    def extract_sync(self, source: IngestionSource) -> List[ExtractedContent]:
        suffix = Path(source.location).suffix.lower()
        mime_type = EXTENSION_TO_MIME.get(suffix)
        if mime_type is None:
            raise AdapterError(
                f"Unsupported document type '{suffix or source.location}' "
                f"(supported: {', '.join(sorted(EXTENSION_TO_MIME))})",
                source=source.location,
            )

        data, source_path = self._read_bytes(source)
        if len(data) > self.max_file_size:
            raise AdapterError(f"Document too large: {len(data)} bytes", source=source.location)

        extra: Dict[str, int] = {}
        html_title: Optional[str] = None

        if suffix in (".md", ".markdown", ".txt"):
            text = clean_text(data.decode("utf-8", errors="replace"))
        elif suffix in (".html", ".htm"):
            html_title, text = html_to_text(data.decode("utf-8", errors="replace"))
        elif suffix == ".pdf":
            text, extra["pageCount"] = self._pdf_text(data)
        else:
            text = self._docx_text(data)

        stem = Path(source.location).stem or source.location
        title = html_title or extract_title(text, stem)

        metadata = self.build_metadata(
            source,
            title=title,
            source_path=source_path,
            mime_type=mime_type,
            language=detect_language(text),
            fileName=Path(source.location).name,
            fileSize=len(data),
            wordCount=count_words(text),
            charCount=len(text),
            **extra,
        )
        logger.debug(f"Parsed {source_path}: {metadata.extra.get('wordCount')} words")
        return [ExtractedContent(content=text, metadata=metadata, source_type=SourceType.DOCUMENT)]

    @staticmethod
    def _pdf_text(data: bytes) -> Tuple[str, int]:
        from pypdf import PdfReader

        reader = PdfReader(io.BytesIO(data))
        pages = []
        for page in reader.pages:
            page_text = page.extract_text() or ""
            if page_text.strip():
                pages.append(page_text)
        return clean_text("\n\n".join(pages)), len(reader.pages)

    @staticmethod
    def _docx_text(data: bytes) -> str:
        import docx  # python-docx

        document = docx.Document(io.BytesIO(data))
        parts = [p.text for p in document.paragraphs if p.text.strip()]
        for table in document.tables:
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
                if cells:
                    parts.append(" | ".join(cells))
        return clean_text("\n\n".join(parts))

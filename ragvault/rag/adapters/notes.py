"""
Note, Voice and Image Adapters
==============================

Text the application already produced: user notes, voice transcripts and
image descriptions / OCR output. Transcription and captioning happen
elsewhere; only their text is ingested here.
"""

import logging
import re
from pathlib import Path
from typing import List, Optional, Tuple

from ..errors import AdapterError
from ..models import IngestionSource, SourceType
from .base import ExtractedContent, SourceAdapter, clean_text, count_words, extract_title, read_text_input

logger = logging.getLogger(__name__)


_CUE_TIMING = re.compile(
    r"^\s*((?:\d{1,2}:)?\d{1,2}:\d{2}[.,]\d{3})\s*-->\s*((?:\d{1,2}:)?\d{1,2}:\d{2}[.,]\d{3}).*$"
)
_CUE_INDEX = re.compile(r"^\s*\d+\s*$")
_VTT_TAG = re.compile(r"</?[^>]+>")


def _timestamp_seconds(value: str) -> float:
    parts = value.replace(",", ".").split(":")
    seconds = 0.0
    for part in parts:
        seconds = seconds * 60 + float(part)
    return seconds


def strip_cues(text: str) -> Tuple[str, Optional[float]]:
    """
    Remove WebVTT/SRT framing (header, cue numbers, timings, NOTE blocks).

    Returns:
        (plain transcript, end time of the last cue in seconds or None)
    """
    lines = text.replace("\r\n", "\n").split("\n")
    kept: List[str] = []
    last_end: Optional[float] = None
    in_note = False

    for line in lines:
        stripped = line.strip()
        if in_note:
            if not stripped:
                in_note = False
            continue
        if stripped.startswith("WEBVTT") or stripped.startswith(("STYLE", "REGION")):
            continue
        if stripped.startswith("NOTE"):
            in_note = True
            continue
        timing = _CUE_TIMING.match(line)
        if timing:
            last_end = _timestamp_seconds(timing.group(2))
            continue
        if _CUE_INDEX.match(line):
            continue
        kept.append(_VTT_TAG.sub("", stripped))

    return clean_text("\n".join(kept)), last_end


class NoteAdapter(SourceAdapter):
    """User notes; ``location`` is the note id."""

    source_types = (SourceType.NOTE,)

    def extract_sync(self, source: IngestionSource) -> List[ExtractedContent]:
        text = read_text_input(source)
        if text is None:
            raise AdapterError("note sources need inline content", source=source.location)
        text = clean_text(text)

        metadata = self.build_metadata(
            source,
            title=extract_title(text, "Untitled note"),
            source_path=source.location,
            wordCount=count_words(text),
        )
        return [ExtractedContent(content=text, metadata=metadata, source_type=SourceType.NOTE)]


class VoiceTranscriptAdapter(SourceAdapter):
    """Transcripts given inline or as .txt / .vtt / .srt files."""

    source_types = (SourceType.VOICE,)

    def extract_sync(self, source: IngestionSource) -> List[ExtractedContent]:
        text = read_text_input(source)
        fmt = source.metadata.get("format")
        source_path = source.location

        if text is None:
            path = Path(source.location).expanduser()
            if not path.is_file():
                raise AdapterError(f"Transcript not found: {source.location}", source=source.location)
            text = path.read_text(encoding="utf-8", errors="replace")
            fmt = fmt or path.suffix.lstrip(".").lower() or "txt"
            source_path = str(path.resolve())

        fmt = fmt or ("vtt" if text.lstrip().startswith("WEBVTT") else "txt")
        cue_end = None
        if fmt in ("vtt", "srt") or any(_CUE_TIMING.match(line) for line in text.splitlines()[:20]):
            text, cue_end = strip_cues(text)
        else:
            text = clean_text(text)

        duration = source.metadata.get("duration", cue_end)
        metadata = self.build_metadata(
            source,
            title=extract_title(text, Path(source.location).stem or "Voice note"),
            source_path=source_path,
            duration=duration,
            format=fmt,
            wordCount=count_words(text),
        )
        return [ExtractedContent(content=text, metadata=metadata, source_type=SourceType.VOICE)]


class ImageAdapter(SourceAdapter):
    """
    Image descriptions and OCR text.

    The description comes from ``metadata.description`` or inline content,
    OCR output from ``metadata.ocrText``; at least one is required.
    """

    source_types = (SourceType.IMAGE,)

    def extract_sync(self, source: IngestionSource) -> List[ExtractedContent]:
        description = source.metadata.get("description") or read_text_input(source) or ""
        ocr_text = source.metadata.get("ocrText") or ""
        description, ocr_text = clean_text(description), clean_text(ocr_text)

        if not description and not ocr_text:
            raise AdapterError("image has neither a description nor OCR text", source=source.location)

        parts = []
        if description:
            parts.append(f"Description: {description}")
        if ocr_text:
            parts.append(f"Text in image: {ocr_text}")

        passthrough = {
            k: v for k, v in source.metadata.items()
            if k not in ("description", "ocrText", "width", "height")
        }
        image_source = IngestionSource(
            source_type=source.source_type,
            location=source.location,
            title=source.title,
            tags=source.tags,
            metadata=passthrough,
        )
        metadata = self.build_metadata(
            image_source,
            title=Path(source.location).name or "Image",
            source_path=source.location,
            width=source.metadata.get("width"),
            height=source.metadata.get("height"),
            hasDescription=bool(description),
            hasOcr=bool(ocr_text),
        )
        return [ExtractedContent(content="\n\n".join(parts), metadata=metadata, source_type=SourceType.IMAGE)]

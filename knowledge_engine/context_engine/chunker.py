"""
Content Chunker - Paragraph-first segmentation with sentence packing

Splits extracted text into bounded, overlapping chunks for embedding:
    - Blank lines delimit paragraphs; a paragraph that fits is one chunk, verbatim
    - Longer paragraphs are split on sentence boundaries and packed up to max_length
    - Each follow-on chunk of a split paragraph repeats the tail of the previous one
    - A single sentence longer than max_length is kept whole (never truncated)
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

_PARAGRAPH_BREAK = re.compile(r"\n[ \t\r\f\v]*\n\s*")
_SENTENCE_END = re.compile(r"[.!?]\s+")


@dataclass
class TextChunk:
    """A bounded text segment with positional metadata"""
    text: str
    chunk_index: int
    start_position: int
    end_position: int
    total_chunks: int = 0
    overlap_length: int = 0  # leading characters repeated from the previous chunk
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def body(self) -> str:
        """Chunk text without the repeated overlap prefix."""
        return self.text[self.overlap_length:]

    @property
    def chunk_size(self) -> int:
        return len(self.text)

    def to_metadata(self) -> Dict[str, Any]:
        metadata = dict(self.metadata)
        metadata.update({
            "total_chunks": self.total_chunks,
            "chunk_size": self.chunk_size,
            "start_position": self.start_position,
            "end_position": self.end_position,
        })
        return metadata


class ContentChunker:
    """
    Deterministic paragraph/sentence chunker.

    Output is a single ordered pass over the input; the same text and
    settings always produce the same chunks.
    """

    def __init__(self, max_length: int = 1000, overlap: int = 200):
        """
        Args:
            max_length: Maximum characters per chunk (unsplittable sentences excepted)
            overlap: Characters of the previous chunk repeated at the start of the next
        """
        if max_length <= 0:
            raise ValueError("max_length must be positive")
        if overlap < 0 or overlap >= max_length:
            raise ValueError("overlap must be between 0 and max_length - 1")
        self.max_length = max_length
        self.overlap = overlap

    def chunk_text(self, text: str, base_metadata: Optional[Dict[str, Any]] = None) -> List[TextChunk]:
        """
        Split text into chunks.

        Args:
            text: Extracted document text
            base_metadata: Metadata copied onto every chunk (file name, page, ...)

        Returns:
            Ordered chunks with chunk_index and total_chunks filled in
        """
        if not text or not text.strip():
            return []

        chunks: List[TextChunk] = []
        for start, paragraph in self._paragraphs(text):
            if len(paragraph) <= self.max_length:
                chunks.append(TextChunk(
                    text=paragraph,
                    chunk_index=len(chunks),
                    start_position=start,
                    end_position=start + len(paragraph),
                ))
                continue

            for piece in self._split_paragraph(paragraph, start):
                piece.chunk_index = len(chunks)
                chunks.append(piece)

        total = len(chunks)
        for chunk in chunks:
            chunk.total_chunks = total
            chunk.metadata = dict(base_metadata or {})

        return chunks

    def _paragraphs(self, text: str) -> Iterator[Tuple[int, str]]:
        """Yield (start offset, trimmed paragraph) for each non-empty paragraph."""
        cursor = 0
        bounds = []
        for match in _PARAGRAPH_BREAK.finditer(text):
            bounds.append((cursor, match.start()))
            cursor = match.end()
        bounds.append((cursor, len(text)))

        for begin, end in bounds:
            raw = text[begin:end]
            stripped = raw.strip()
            if not stripped:
                continue
            leading = len(raw) - len(raw.lstrip())
            yield begin + leading, stripped

    @staticmethod
    def _sentences(paragraph: str) -> List[Tuple[int, int]]:
        """Sentence spans (start, end) within a trimmed paragraph."""
        spans = []
        cursor = 0
        for match in _SENTENCE_END.finditer(paragraph):
            end = match.start() + 1  # keep the terminal punctuation
            spans.append((cursor, end))
            cursor = match.end()
        if cursor < len(paragraph):
            spans.append((cursor, len(paragraph)))
        return spans

    def _split_paragraph(self, paragraph: str, offset: int) -> List[TextChunk]:
        pieces: List[TextChunk] = []
        spans = self._sentences(paragraph)

        body_start: Optional[int] = None
        body_end = 0
        prefix = ""

        def flush() -> None:
            nonlocal prefix, body_start
            body = paragraph[body_start:body_end]
            text = prefix + body
            pieces.append(TextChunk(
                text=text,
                chunk_index=0,
                start_position=offset + body_start,
                end_position=offset + body_end,
                overlap_length=len(prefix),
            ))
            prefix = self._overlap_prefix(text)
            body_start = None

        for sentence_start, sentence_end in spans:
            if body_start is not None:
                candidate = len(prefix) + (sentence_end - body_start)
                if candidate <= self.max_length:
                    body_end = sentence_end
                    continue
                flush()

            sentence_length = sentence_end - sentence_start
            if sentence_length > self.max_length:
                # Unsplittable sentence: emitted whole, without an overlap prefix
                prefix = ""
            elif len(prefix) + sentence_length > self.max_length:
                prefix = self._fit_prefix(prefix, self.max_length - sentence_length)

            body_start = sentence_start
            body_end = sentence_end

        if body_start is not None:
            flush()

        return pieces

    def _overlap_prefix(self, previous_text: str) -> str:
        if self.overlap == 0:
            return ""
        tail = previous_text[-self.overlap:].lstrip()
        return f"{tail} " if tail else ""

    @staticmethod
    def _fit_prefix(prefix: str, room: int) -> str:
        """Shrink an overlap prefix so prefix + sentence stays within budget."""
        if room <= 1:
            return ""
        tail = prefix.rstrip()[-(room - 1):].lstrip()
        return f"{tail} " if tail else ""

from __future__ import annotations

"""Separator-aware text chunking with overlap and token estimates."""

import logging
import math
import re
from dataclasses import dataclass, field, replace
from typing import Any

from src.rag.types import Chunk

logger = logging.getLogger(__name__)

# Strongest boundary first; a space is the last resort before a hard cut.
DEFAULT_SEPARATORS: tuple[str, ...] = (
    "\n\n\n",
    "\n\n",
    "\n",
    "。",
    ".",
    "！",
    "!",
    "？",
    "?",
    "；",
    ";",
    "，",
    ",",
    " ",
)

# Separators at or below this priority end the backward scan immediately.
_STRONG_SEPARATOR_PRIORITY = 2

_EXCESS_NEWLINES_RE = re.compile(r"\n{4,}")
_SENTENCE_END_RE = re.compile(r"([。！？.!?]+)")

_CJK_RANGES: tuple[tuple[int, int], ...] = (
    (0x4E00, 0x9FFF),  # unified ideographs
    (0x3400, 0x4DBF),  # extension A
    (0x20000, 0x2FA1F),  # extensions B-F and compatibility supplement
    (0xF900, 0xFAFF),  # compatibility ideographs
    (0x3040, 0x309F),  # hiragana
    (0x30A0, 0x30FF),  # katakana
    (0xAC00, 0xD7AF),  # hangul syllables
)


def _is_cjk(char: str) -> bool:
    code = ord(char)
    return any(low <= code <= high for low, high in _CJK_RANGES)


def estimate_tokens(text: str) -> int:
    """Approximate the token count of mixed CJK/Latin text.

    CJK characters average about 1.5 characters per token and everything else
    about 4. This is a heuristic for sizing, not a tokenizer count.
    """
    if not text:
        return 0
    cjk = sum(1 for char in text if _is_cjk(char))
    other = len(text) - cjk
    return math.ceil(cjk / 1.5 + other / 4)


def normalize_text(text: str) -> str:
    """Unify line endings, cap blank-line runs and trim."""
    unified = text.replace("\r\n", "\n").replace("\r", "\n")
    return _EXCESS_NEWLINES_RE.sub("\n\n\n", unified).strip()


def split_into_sentences(text: str) -> list[str]:
    """Split text after runs of sentence terminators, keeping the terminator."""
    parts = _SENTENCE_END_RE.split(text)
    sentences: list[str] = []
    for idx in range(0, len(parts), 2):
        terminator = parts[idx + 1] if idx + 1 < len(parts) else ""
        sentences.append(parts[idx] + terminator)
    return [sentence for sentence in sentences if sentence]


@dataclass(frozen=True)
class ChunkingOptions:
    """Chunk sizing in characters."""
    chunk_size: int = 500
    chunk_overlap: int = 50
    min_chunk_size: int = 100
    separators: tuple[str, ...] = DEFAULT_SEPARATORS

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be greater than zero")
        if self.chunk_overlap < 0:
            raise ValueError("chunk_overlap must not be negative")
        if self.min_chunk_size < 0:
            raise ValueError("min_chunk_size must not be negative")
        if any(not separator for separator in self.separators):
            raise ValueError("separators must be non-empty strings")
        object.__setattr__(self, "separators", tuple(self.separators))


@dataclass(frozen=True)
class TextChunker:
    """Split normalized text into overlapping, boundary-aware chunks."""
    options: ChunkingOptions = field(default_factory=ChunkingOptions)

    def with_defaults(self, **overrides: Any) -> TextChunker:
        """Return a chunker whose default options include the overrides."""
        return TextChunker(options=replace(self.options, **overrides))

    def chunk(self, text: str, options: ChunkingOptions | None = None) -> list[Chunk]:
        """Chunk text on the strongest separator inside each window."""
        opts = options or self.options
        cleaned = normalize_text(text)
        if not cleaned:
            return []
        length = len(cleaned)
        if length <= opts.min_chunk_size:
            return [_make_chunk(cleaned, 0, 0, length)]

        chunks: list[Chunk] = []
        current_start = 0
        while current_start < length:
            current_end = min(current_start + opts.chunk_size, length)
            if current_end < length:
                split_pos = self._find_split(cleaned, current_start, current_end, opts)
                if split_pos > current_start:
                    current_end = split_pos

            content = cleaned[current_start:current_end].strip()
            if len(content) >= opts.min_chunk_size:
                chunks.append(_make_chunk(content, len(chunks), current_start, current_end))

            current_start = max(current_end - opts.chunk_overlap, current_start + 1)

        logger.debug(
            "text_chunked",
            extra={"mode": "window", "chunks": len(chunks), "text_length": length},
        )
        return chunks

    def chunk_by_sentence(
        self, text: str, options: ChunkingOptions | None = None
    ) -> list[Chunk]:
        """Greedily pack whole sentences into chunks of at most chunk_size.

        No overlap is applied and the final group is always emitted. Offsets
        are positions in the input text as given.
        """
        opts = options or self.options
        chunks: list[Chunk] = []
        group: list[str] = []
        group_length = 0
        group_start = 0
        position = 0

        for sentence in split_into_sentences(text):
            sentence_start = position
            position += len(sentence)
            if not sentence.strip():
                continue
            if group and group_length + len(sentence) > opts.chunk_size:
                content = "".join(group)
                chunks.append(_make_chunk(content, len(chunks), group_start, group_start + len(content)))
                group = []
                group_length = 0
            if not group:
                group_start = sentence_start
            group.append(sentence)
            group_length += len(sentence)

        if group:
            content = "".join(group)
            chunks.append(_make_chunk(content, len(chunks), group_start, group_start + len(content)))

        logger.debug(
            "text_chunked",
            extra={"mode": "sentence", "chunks": len(chunks), "text_length": len(text)},
        )
        return chunks

    def _find_split(
        self, text: str, start: int, end: int, opts: ChunkingOptions
    ) -> int:
        """Scan backwards from end for the best separator; -1 when none."""
        search_start = max(start + opts.chunk_size // 2, start)
        best_pos = -1
        best_priority = len(opts.separators)
        for pos in range(end, search_start - 1, -1):
            for priority, separator in enumerate(opts.separators):
                if text.startswith(separator, pos):
                    if priority < best_priority:
                        best_pos = pos + len(separator)
                        best_priority = priority
                    break
            if best_priority <= _STRONG_SEPARATOR_PRIORITY:
                break
        return best_pos


def _make_chunk(content: str, index: int, start: int, end: int) -> Chunk:
    return Chunk(
        content=content,
        index=index,
        start_offset=start,
        end_offset=end,
        token_estimate=estimate_tokens(content),
    )

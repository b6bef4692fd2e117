"""Sentence-respecting text chunking.

Chunks are contiguous slices of the source text: whitespace after a sentence
terminator stays with the sentence it follows, so concatenating the chunks in order
reproduces the input exactly and every chunk knows its absolute start offset.
"""

import re
from typing import List, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from saga_extraction.errors import ValidationError
from saga_extraction.utils.config import ChunkingConfig

# A sentence ends at a run of terminators followed by whitespace.
_SENTENCE_END_RE = re.compile(r"[.!?]+\s+")


class Chunk(BaseModel):
    """A bounded segment of the source text submitted as one extraction unit."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=0)
    start: int = Field(..., ge=0)
    content: str

    @property
    def end(self) -> int:
        return self.start + len(self.content)

    def __len__(self) -> int:
        return len(self.content)


class TextChunker:
    """Split text into chunks of whole sentences no longer than a size bound.

    A single sentence longer than the bound is emitted alone as an oversized chunk
    instead of being cut mid-word.

    Example:
        >>> chunker = TextChunker()
        >>> chunks = chunker.split(text, 5000)
        >>> assert "".join(c.content for c in chunks) == text
    """

    def __init__(self, config: Optional[ChunkingConfig] = None) -> None:
        self.config = config or ChunkingConfig()

    def split(self, text: str, max_chunk_size: Optional[int] = None) -> List[Chunk]:
        """Split ``text`` into ordered chunks.

        Args:
            text: Source text
            max_chunk_size: Size bound in characters (defaults to the configured size)

        Returns:
            Ordered chunks; empty list for empty text

        Raises:
            ValidationError: If the size bound is not positive
        """
        size = self.config.default_chunk_size if max_chunk_size is None else max_chunk_size
        if size <= 0:
            raise ValidationError(f"Chunk size must be positive, got {size}")
        if not text:
            return []

        chunks: List[Chunk] = []
        buffer: List[str] = []
        buffer_len = 0
        chunk_start = 0
        oversized = 0

        for sentence in self._split_sentences(text):
            if buffer and buffer_len + len(sentence) > size:
                content = "".join(buffer)
                chunks.append(Chunk(index=len(chunks), start=chunk_start, content=content))
                chunk_start += len(content)
                buffer, buffer_len = [], 0

            buffer.append(sentence)
            buffer_len += len(sentence)
            if len(sentence) > size:
                oversized += 1

        if buffer:
            chunks.append(Chunk(index=len(chunks), start=chunk_start, content="".join(buffer)))

        if oversized:
            logger.warning(
                "{} sentence(s) exceed chunk size {}; emitted as oversized chunks", oversized, size
            )
        logger.debug("Split {} characters into {} chunks (size {})", len(text), len(chunks), size)
        return chunks

    def count_chunks(self, text: str, max_chunk_size: Optional[int] = None) -> int:
        return len(self.split(text, max_chunk_size))

    def _split_sentences(self, text: str) -> List[str]:
        sentences: List[str] = []
        last = 0
        for match in _SENTENCE_END_RE.finditer(text):
            sentences.append(text[last : match.end()])
            last = match.end()
        if last < len(text):
            sentences.append(text[last:])
        return sentences

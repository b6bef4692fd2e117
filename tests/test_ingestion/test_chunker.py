from __future__ import annotations

import random

import pytest

from saga_extraction.errors import ValidationError
from saga_extraction.ingestion.chunker import TextChunker


def _sentences(count: int, length: int = 100) -> str:
    # Each sentence is exactly `length` characters including ". "
    return "".join("x" * (length - 2) + ". " for _ in range(count))


def test_twelve_thousand_characters_split_into_three_chunks() -> None:
    text = _sentences(120)
    assert len(text) == 12_000

    chunks = TextChunker().split(text, 5000)

    assert [len(c) for c in chunks] == [5000, 5000, 2000]
    assert [c.index for c in chunks] == [0, 1, 2]
    assert [c.start for c in chunks] == [0, 5000, 10_000]


def test_chunks_reconstruct_source_exactly() -> None:
    text = (
        "The Night's Watch held the Wall for eight thousand years!  Then winter came. "
        "Did anyone believe the old tales?\nOnly Old Nan. Bran listened anyway"
    )

    chunks = TextChunker().split(text, 60)

    assert "".join(c.content for c in chunks) == text
    for chunk in chunks:
        assert text[chunk.start : chunk.end] == chunk.content


def test_chunks_respect_size_bound_on_sentence_boundaries() -> None:
    text = _sentences(30, length=40)

    chunks = TextChunker().split(text, 130)

    assert all(len(c) <= 130 for c in chunks)
    assert all(c.content.endswith(". ") for c in chunks)


def test_oversized_sentence_emitted_alone() -> None:
    long_sentence = "A" * 300 + ". "
    text = "Short one. " + long_sentence + "Tail."

    chunks = TextChunker().split(text, 100)

    assert [c.content for c in chunks] == ["Short one. ", long_sentence, "Tail."]


def test_empty_text_yields_no_chunks() -> None:
    assert TextChunker().split("", 100) == []


def test_non_positive_size_rejected() -> None:
    with pytest.raises(ValidationError):
        TextChunker().split("Some text.", 0)


def test_count_chunks_uses_configured_default() -> None:
    assert TextChunker().count_chunks(_sentences(120)) == 3


def _random_text(rng: random.Random) -> str:
    words = ["Jon", "Arya", "Winterfell", "the", "wolf", "rode", "north", "Ser", "İlyn", "glass"]
    parts = []
    for _ in range(rng.randint(1, 40)):
        sentence = " ".join(rng.choice(words) for _ in range(rng.randint(1, 30)))
        terminator = rng.choice([".", "!", "?", "...", ""])
        parts.append(sentence + terminator + rng.choice([" ", "  ", "\n", "\n\n", ""]))
    return "".join(parts)


@pytest.mark.parametrize("seed", range(25))
def test_random_texts_split_into_contiguous_bounded_chunks(seed: int) -> None:
    rng = random.Random(seed)
    chunker = TextChunker()

    for _ in range(20):
        text = _random_text(rng)
        size = rng.randint(1, 400)

        chunks = chunker.split(text, size)

        assert "".join(c.content for c in chunks) == text
        assert [c.index for c in chunks] == list(range(len(chunks)))
        offset = 0
        for chunk in chunks:
            assert chunk.start == offset
            assert chunk.content
            if len(chunk) > size:
                assert len(chunker._split_sentences(chunk.content)) == 1
            offset = chunk.end
        assert offset == len(text)
        for current, following in zip(chunks, chunks[1:]):
            assert len(current) + len(chunker._split_sentences(following.content)[0]) > size

from __future__ import annotations

"""Chunking behavior tests."""

import pytest

from src.loaders.chunking import (
    ChunkingOptions,
    TextChunker,
    estimate_tokens,
    normalize_text,
    split_into_sentences,
)

SCENARIO_TEXT = (
    "Paragraph one.\n\nParagraph two is longer and exceeds the target size "
    "threshold significantly to force a split."
)


def small_chunker(chunk_size: int = 40, overlap: int = 5, min_size: int = 10) -> TextChunker:
    return TextChunker(
        ChunkingOptions(chunk_size=chunk_size, chunk_overlap=overlap, min_chunk_size=min_size)
    )


def test_short_text_returns_single_trimmed_chunk() -> None:
    chunks = TextChunker().chunk("  short note  ")

    assert len(chunks) == 1
    assert chunks[0].content == "short note"
    assert chunks[0].index == 0
    assert (chunks[0].start_offset, chunks[0].end_offset) == (0, 10)
    assert chunks[0].token_estimate == 3


@pytest.mark.parametrize("text", ["", "   ", "\r\n\n\t "])
def test_empty_input_yields_no_chunks(text: str) -> None:
    assert TextChunker().chunk(text) == []
    assert TextChunker().chunk_by_sentence(text) == []


def test_offsets_refer_to_normalized_text() -> None:
    chunks = TextChunker().chunk("\r\n\r\n  Hello world.  \r\n")

    assert len(chunks) == 1
    assert chunks[0].content == "Hello world."
    assert chunks[0].end_offset == len("Hello world.")


def test_scenario_splits_on_word_boundary() -> None:
    chunks = small_chunker().chunk(SCENARIO_TEXT)
    normalized = normalize_text(SCENARIO_TEXT)

    assert len(chunks) > 1
    assert chunks[0].content == "Paragraph one.\n\nParagraph two is longer"
    for chunk in chunks:
        if chunk.end_offset < len(normalized):
            assert normalized[chunk.end_offset - 1] == " "


def test_paragraph_break_beats_later_spaces() -> None:
    text = (
        "First paragraph text here.\n\n"
        "Second paragraph continues with many more words to split."
    )
    chunks = small_chunker().chunk(text)

    assert chunks[0].content == "First paragraph text here."
    assert chunks[0].end_offset == 28
    assert chunks[1].start_offset == 28 - 5


def test_cjk_sentence_terminator_is_a_boundary() -> None:
    text = "这是第一句话。" * 20
    chunks = small_chunker(chunk_size=50, overlap=0, min_size=10).chunk(text)

    assert chunks[0].content.endswith("。")
    assert len(chunks[0].content) == 49
    assert chunks[1].start_offset == 49


def test_chunks_are_ordered_and_respect_min_size() -> None:
    text = " ".join(
        f"Sentence number {idx} talks about retrieval, chunking and embeddings."
        for idx in range(60)
    )
    chunker = TextChunker()
    chunks = chunker.chunk(text)

    assert len(chunks) > 3
    assert [chunk.index for chunk in chunks] == list(range(len(chunks)))
    starts = [chunk.start_offset for chunk in chunks]
    assert starts == sorted(starts)
    assert all(len(chunk.content) >= chunker.options.min_chunk_size for chunk in chunks)
    assert all(chunk.end_offset > chunk.start_offset for chunk in chunks)


def test_overlap_larger_than_chunk_still_progresses() -> None:
    chunks = small_chunker(chunk_size=10, overlap=50, min_size=1).chunk("word " * 20)

    assert chunks
    starts = [chunk.start_offset for chunk in chunks]
    assert starts == sorted(starts)
    assert len(set(starts)) == len(starts)


def test_short_trailing_fragment_is_dropped() -> None:
    chunks = small_chunker(chunk_size=40, overlap=0, min_size=15).chunk(
        "A reasonably long opening sentence here. Tail."
    )

    assert [chunk.content for chunk in chunks] == ["A reasonably long opening sentence here."]


def test_estimate_tokens_weights_cjk() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
    assert estimate_tokens("你好世界") == 3
    assert estimate_tokens("こんにちは") == 4
    assert estimate_tokens("hello你好") == 3


def test_split_into_sentences_keeps_terminators() -> None:
    assert split_into_sentences("One. Two!! Three? tail") == ["One.", " Two!!", " Three?", " tail"]


def test_chunk_by_sentence_packs_greedily_with_real_offsets() -> None:
    text = "First sentence. Second sentence! Third one? Last bit"
    chunks = TextChunker(ChunkingOptions(chunk_size=35)).chunk_by_sentence(text)

    assert [chunk.content for chunk in chunks] == [
        "First sentence. Second sentence!",
        " Third one? Last bit",
    ]
    assert chunks[1].start_offset == chunks[0].end_offset
    for chunk in chunks:
        assert text[chunk.start_offset : chunk.end_offset] == chunk.content


def test_with_defaults_returns_new_chunker() -> None:
    base = TextChunker()
    tuned = base.with_defaults(chunk_size=200, min_chunk_size=20)

    assert tuned.options.chunk_size == 200
    assert tuned.options.min_chunk_size == 20
    assert base.options.chunk_size == 500


@pytest.mark.parametrize(
    "kwargs",
    [{"chunk_size": 0}, {"chunk_overlap": -1}, {"min_chunk_size": -5}, {"separators": ("",)}],
)
def test_invalid_options_raise(kwargs: dict[str, object]) -> None:
    with pytest.raises(ValueError):
        ChunkingOptions(**kwargs)

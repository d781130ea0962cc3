"""
Tests for ContentChunker

Validates paragraph handling, sentence packing, overlap and size bounds.
"""

import pytest

from knowledge_engine.context_engine.chunker import ContentChunker

NUMBER_WORDS = ["one", "two", "three", "four", "five", "six", "seven", "eight", "nine", "ten", "eleven", "twelve"]


def long_paragraph() -> str:
    return " ".join(f"Sentence number {word} is right here." for word in NUMBER_WORDS)


def test_short_document_is_single_verbatim_chunk():
    chunker = ContentChunker(max_length=1000, overlap=200)
    text = "Our office opens at nine. Parking is available behind the building."

    chunks = chunker.chunk_text(text)

    assert len(chunks) == 1
    assert chunks[0].text == text
    assert chunks[0].chunk_index == 0
    assert chunks[0].total_chunks == 1
    assert chunks[0].overlap_length == 0


def test_empty_text_produces_no_chunks():
    chunker = ContentChunker()
    assert chunker.chunk_text("") == []
    assert chunker.chunk_text("   \n\n  ") == []


def test_paragraphs_become_separate_chunks_with_offsets():
    chunker = ContentChunker(max_length=1000, overlap=200)
    text = "First paragraph about billing.\n\n  Second paragraph about shipping.\n\n\nThird one."

    chunks = chunker.chunk_text(text)

    assert [chunk.text for chunk in chunks] == [
        "First paragraph about billing.",
        "Second paragraph about shipping.",
        "Third one.",
    ]
    assert [chunk.chunk_index for chunk in chunks] == [0, 1, 2]
    assert all(chunk.total_chunks == 3 for chunk in chunks)
    second = chunks[1]
    assert text[second.start_position:second.end_position] == second.text


def test_long_paragraph_respects_max_length():
    chunker = ContentChunker(max_length=100, overlap=20)

    chunks = chunker.chunk_text(long_paragraph())

    assert len(chunks) > 1
    assert all(len(chunk.text) <= 100 for chunk in chunks)


def test_bodies_reconstruct_paragraph_text():
    chunker = ContentChunker(max_length=100, overlap=20)
    paragraph = long_paragraph()

    chunks = chunker.chunk_text(paragraph)

    assert " ".join(chunk.body for chunk in chunks) == paragraph


def test_follow_on_chunks_repeat_previous_tail():
    chunker = ContentChunker(max_length=100, overlap=20)

    chunks = chunker.chunk_text(long_paragraph())

    assert chunks[0].overlap_length == 0
    for previous, current in zip(chunks, chunks[1:]):
        assert current.overlap_length > 0
        assert current.text[:current.overlap_length] == previous.text[-20:].lstrip() + " "


def test_chunks_split_on_sentence_boundaries():
    chunker = ContentChunker(max_length=100, overlap=20)

    for chunk in chunker.chunk_text(long_paragraph()):
        assert chunk.body.startswith("Sentence number")
        assert chunk.body.endswith(".")


def test_unsplittable_sentence_is_kept_whole():
    chunker = ContentChunker(max_length=50, overlap=10)
    huge_sentence = "A" + "b" * 78 + "."
    paragraph = f"Short one here. {huge_sentence} Tail sentence."

    chunks = chunker.chunk_text(paragraph)

    oversized = [chunk for chunk in chunks if len(chunk.text) > 50]
    assert len(oversized) == 1
    assert oversized[0].text == huge_sentence
    assert oversized[0].overlap_length == 0
    assert chunks[-1].body == "Tail sentence."


def test_base_metadata_copied_to_every_chunk():
    chunker = ContentChunker(max_length=100, overlap=20)

    chunks = chunker.chunk_text(long_paragraph(), base_metadata={"file_name": "faq.txt"})

    for chunk in chunks:
        metadata = chunk.to_metadata()
        assert metadata["file_name"] == "faq.txt"
        assert metadata["total_chunks"] == len(chunks)
        assert metadata["chunk_size"] == len(chunk.text)


def test_chunking_is_deterministic():
    chunker = ContentChunker(max_length=100, overlap=20)
    first = [chunk.text for chunk in chunker.chunk_text(long_paragraph())]
    second = [chunk.text for chunk in chunker.chunk_text(long_paragraph())]
    assert first == second


def test_invalid_overlap_rejected():
    with pytest.raises(ValueError):
        ContentChunker(max_length=100, overlap=100)
    with pytest.raises(ValueError):
        ContentChunker(max_length=0, overlap=0)

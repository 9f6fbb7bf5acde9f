from datetime import datetime, timezone

import pytest

from advisor.models import CrmContact, CrmNote
from advisor.rag.chunking import chunk_contact, chunk_email, chunk_text
from conftest import make_email


def _reconstruct(text, chunks):
    out = chunks[0].content
    for prev, chunk in zip(chunks, chunks[1:]):
        out += chunk.content[prev.end_char - chunk.start_char :]
    return out


def test_three_thousand_chars_yield_two_chunks_with_shared_overlap():
    text = "x" * 3000

    chunks = chunk_text(text, chunk_size=1500, chunk_overlap=200)

    assert len(chunks) == 2
    assert (chunks[0].start_char, chunks[0].end_char) == (0, 1500)
    assert (chunks[1].start_char, chunks[1].end_char) == (1300, 3000)
    assert chunks[0].content[-200:] == chunks[1].content[:200]


def test_chunks_cover_text_and_respect_minimum_size():
    sentences = [f"Sentence number {i} talks about portfolio allocation." for i in range(120)]
    text = " ".join(sentences) + "\n\nFinal paragraph."

    chunks = chunk_text(text, chunk_size=500, chunk_overlap=80, min_chunk_size=100)

    assert len(chunks) > 1
    assert _reconstruct(text, chunks) == text
    assert all(len(c.content) >= 100 for c in chunks)
    assert [c.index for c in chunks] == list(range(len(chunks)))
    assert all(c.content == text[c.start_char : c.end_char] for c in chunks)


def test_prefers_sentence_boundary_inside_window():
    text = "a" * 700 + ". " + "b" * 900

    chunks = chunk_text(text, chunk_size=1000, chunk_overlap=100)

    assert chunks[0].end_char == 702
    assert chunks[0].content.endswith(". ")


def test_forward_progress_without_natural_breaks():
    text = "y" * 10_000

    chunks = chunk_text(text, chunk_size=300, chunk_overlap=299, min_chunk_size=10)

    starts = [c.start_char for c in chunks]
    assert starts == sorted(set(starts))
    assert chunks[-1].end_char == len(text)


def test_short_text_is_a_single_chunk_and_empty_text_none():
    assert chunk_text("") == []
    (only,) = chunk_text("tiny", min_chunk_size=100)
    assert only.content == "tiny"


def test_trailing_fragment_is_folded_into_previous_chunk():
    text = "w" * 550

    chunks = chunk_text(text, chunk_size=500, chunk_overlap=0, min_chunk_size=200)

    assert [(c.start_char, c.end_char) for c in chunks] == [(0, 550)]


def test_overlap_must_be_smaller_than_chunk_size():
    with pytest.raises(ValueError):
        chunk_text("text", chunk_size=100, chunk_overlap=100)


def test_chunk_email_includes_header():
    (chunk,) = chunk_email(make_email(subject="Plan", body="Let's talk retirement."))

    assert chunk.content.startswith("From: Client\nTo: advisor@example.com\nSubject: Plan\nDate: 2024-05-01")
    assert "Let's talk retirement." in chunk.content


def test_chunk_contact_with_notes():
    contact = CrmContact(id="c1", email="pat@example.com", first_name="Pat", last_name="Lee", company="Acme")
    note = CrmNote(id="n1", content="Wants to review 529 plan", created_at=datetime(2024, 3, 2, tzinfo=timezone.utc))

    (chunk,) = chunk_contact(contact, [note])

    assert "Contact: Pat Lee" in chunk.content
    assert "Company: Acme" in chunk.content
    assert "Note (2024-03-02): Wants to review 529 plan" in chunk.content

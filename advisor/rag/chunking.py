"""Text chunking for the retrieval pipeline.

Chunks are exact, overlapping spans of the input. Windows target
``chunk_size`` characters and prefer to end at a paragraph break, then a
sentence end, then a space, looking only in the second half of the window.
"""

from __future__ import annotations

from dataclasses import dataclass

from advisor.models import CrmContact, CrmNote, NormalizedEmail

DEFAULT_CHUNK_SIZE = 1500  # characters, roughly 375 tokens
DEFAULT_CHUNK_OVERLAP = 200
DEFAULT_MIN_CHUNK_SIZE = 100

_SENTENCE_ENDERS = (". ", "! ", "? ", ".\n", "!\n", "?\n")
_SINGLE_CONTACT_CHUNK_CHARS = 500


@dataclass(slots=True)
class TextChunk:
    content: str
    index: int
    start_char: int
    end_char: int


def chunk_text(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE,
) -> list[TextChunk]:
    """Split ``text`` into overlapping chunks."""

    if chunk_size <= 0 or not 0 <= chunk_overlap < chunk_size:
        raise ValueError("chunk_overlap must be non-negative and smaller than chunk_size")
    if not text:
        return []
    length = len(text)
    if length < min_chunk_size:
        return [TextChunk(content=text, index=0, start_char=0, end_char=length)]

    spans: list[tuple[int, int]] = []
    start = 0
    while start < length:
        end = start + chunk_size
        if end + chunk_overlap >= length:
            # A further window would hold little beyond the overlap.
            end = length
        else:
            end = _natural_break(text, start, end, chunk_size)
        spans.append((start, end))
        if end >= length:
            break
        next_start = end - chunk_overlap
        start = next_start if next_start > start else end

    if len(spans) > 1 and spans[-1][1] - spans[-1][0] < min_chunk_size:
        tail_end = spans.pop()[1]
        head_start = spans.pop()[0]
        spans.append((head_start, tail_end))

    return [
        TextChunk(content=text[s:e], index=i, start_char=s, end_char=e)
        for i, (s, e) in enumerate(spans)
    ]


def _natural_break(text: str, start: int, end: int, chunk_size: int) -> int:
    floor = start + chunk_size // 2 + 1

    paragraph = text.rfind("\n\n", floor, end)
    if paragraph != -1:
        return paragraph

    best = -1
    for ender in _SENTENCE_ENDERS:
        pos = text.rfind(ender, floor, end)
        if pos != -1:
            best = max(best, pos + len(ender))
    if best != -1:
        return best

    word = text.rfind(" ", floor, end)
    if word != -1:
        return word
    return end


def chunk_email(
    email: NormalizedEmail,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE,
) -> list[TextChunk]:
    header = "\n".join(
        [
            f"From: {email.sender_name or email.sender}",
            f"To: {', '.join(email.to)}",
            f"Subject: {email.subject}",
            f"Date: {email.date.date().isoformat()}",
        ]
    )
    return chunk_text(f"{header}\n\n{email.body}", chunk_size, chunk_overlap, min_chunk_size)


def chunk_contact(
    contact: CrmContact,
    notes: list[CrmNote] | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE,
) -> list[TextChunk]:
    lines = [f"Contact: {contact.full_name or 'Unknown'}", f"Email: {contact.email}"]
    if contact.company:
        lines.append(f"Company: {contact.company}")
    if contact.phone:
        lines.append(f"Phone: {contact.phone}")
    if contact.job_title:
        lines.append(f"Title: {contact.job_title}")
    text = "\n".join(lines)

    if notes:
        notes_text = "\n\n".join(f"Note ({n.created_at.date().isoformat()}): {n.content}" for n in notes)
        text = f"{text}\n\nNotes:\n{notes_text}"

    if len(text) < _SINGLE_CONTACT_CHUNK_CHARS:
        return [TextChunk(content=text, index=0, start_char=0, end_char=len(text))]
    return chunk_text(text, chunk_size, chunk_overlap, min_chunk_size)

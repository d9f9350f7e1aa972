"""Groups short final transcripts into paragraph-sized entries per speaker."""

import logging
from dataclasses import dataclass
from datetime import datetime

from meeting_assist._types import AudioSource, TranscriptEntry
from meeting_assist.events import Listeners

logger = logging.getLogger(__name__)

PARAGRAPH_MAX_CHARS = 100


@dataclass(frozen=True)
class ParagraphTranscripts:
    """Flushed paragraphs plus the still-open text of each role."""

    transcripts: tuple[TranscriptEntry, ...]
    remaining_mic_text: str
    remaining_system_text: str


class ParagraphBuffer:
    """Per-role accumulator flushing into paragraphs.

    A role's text is flushed when it grows past ``max_chars`` or when an end
    of paragraph arrives for that role while it holds text. Events are
    processed strictly in arrival order and never reordered.
    """

    def __init__(self, max_chars: int = PARAGRAPH_MAX_CHARS):
        if max_chars <= 0:
            raise ValueError("max_chars must be positive")
        self.max_chars = max_chars
        self.paragraph_listeners: Listeners[TranscriptEntry] = Listeners("paragraph")
        self._paragraphs: list[TranscriptEntry] = []
        self._buffers = {source: "" for source in AudioSource}

    @property
    def paragraphs(self) -> list[TranscriptEntry]:
        return list(self._paragraphs)

    def remaining(self, role: AudioSource) -> str:
        """Text of ``role`` not yet flushed into a paragraph."""
        return self._buffers[role]

    def add(self, entry: TranscriptEntry) -> TranscriptEntry | None:
        """Append a final transcript; returns the paragraph it flushed, if any."""
        text = entry.text.strip()
        if not text:
            return None
        self._buffers[entry.role] = " ".join(filter(None, (self._buffers[entry.role], text)))
        if len(self._buffers[entry.role]) > self.max_chars:
            return self._flush(entry.role, entry.created_at)
        return None

    def mark_end_of_paragraph(
        self, role: AudioSource, at: datetime | None = None
    ) -> TranscriptEntry | None:
        """Close ``role``'s paragraph; returns it unless the buffer was empty."""
        if not self._buffers[role]:
            return None
        return self._flush(role, at or datetime.now())

    def snapshot(self) -> ParagraphTranscripts:
        return ParagraphTranscripts(
            transcripts=tuple(self._paragraphs),
            remaining_mic_text=self._buffers[AudioSource.MIC],
            remaining_system_text=self._buffers[AudioSource.SYSTEM],
        )

    def clear(self) -> None:
        self._paragraphs.clear()
        for role in self._buffers:
            self._buffers[role] = ""

    def _flush(self, role: AudioSource, at: datetime) -> TranscriptEntry:
        paragraph = TranscriptEntry(text=self._buffers[role], role=role, created_at=at)
        self._buffers[role] = ""
        self._paragraphs.append(paragraph)
        logger.debug("Flushed %s paragraph (%d chars)", role.value, len(paragraph.text))
        self.paragraph_listeners.emit(paragraph)
        return paragraph


def format_time(moment: datetime) -> str:
    """Clock time like ``3:04 PM``."""
    return f"{moment.strftime('%I').lstrip('0')}:{moment.strftime('%M %p')}"


def format_transcript(snapshot: ParagraphTranscripts, now: datetime | None = None) -> str:
    """Render paragraphs as ``Me | 3:04 PM`` headed blocks for copying.

    Unflushed text of each role is appended stamped with ``now``.
    """
    now = now or datetime.now()
    blocks = [
        f"{paragraph.role.speaker} | {format_time(paragraph.created_at)}\n{paragraph.text}"
        for paragraph in snapshot.transcripts
    ]
    if snapshot.remaining_mic_text:
        blocks.append(f"{AudioSource.MIC.speaker} | {format_time(now)}\n{snapshot.remaining_mic_text}")
    if snapshot.remaining_system_text:
        blocks.append(
            f"{AudioSource.SYSTEM.speaker} | {format_time(now)}\n{snapshot.remaining_system_text}"
        )
    return "\n".join(blocks)

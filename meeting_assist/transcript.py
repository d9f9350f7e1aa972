"""Conversation transcript accumulated from both audio sources."""

import logging
from collections import deque
from datetime import datetime

from meeting_assist._types import AudioSource, TranscriptEntry
from meeting_assist.paragraphs import PARAGRAPH_MAX_CHARS, ParagraphBuffer, ParagraphTranscripts

logger = logging.getLogger(__name__)

MAX_TRANSCRIPTIONS_IN_CONTEXT = 1000


def render_audio_context(entries) -> str:
    """Render entries as the ``Audio:`` block given to the model."""
    entries = list(entries)
    if not entries:
        return ""
    return "Audio:\n\n" + "\n".join(entry.roled_transcript for entry in entries)


class Transcript:
    """Final transcripts in arrival order plus their paragraph view.

    Only the newest ``max_entries`` transcripts are kept for the model
    context; paragraphs are built as events arrive and are not trimmed.
    """

    def __init__(
        self,
        max_entries: int = MAX_TRANSCRIPTIONS_IN_CONTEXT,
        max_chars: int = PARAGRAPH_MAX_CHARS,
    ):
        self.max_entries = max_entries
        self._entries: deque[TranscriptEntry] = deque(maxlen=max_entries)
        self.paragraphs = ParagraphBuffer(max_chars)

    @property
    def entries(self) -> list[TranscriptEntry]:
        return list(self._entries)

    def add(self, entry: TranscriptEntry) -> None:
        if len(self._entries) == self.max_entries:
            logger.debug("Transcript full, dropping oldest entry")
        self._entries.append(entry)
        self.paragraphs.add(entry)

    def mark_end_of_paragraph(self, role: AudioSource, at: datetime | None = None) -> None:
        self.paragraphs.mark_end_of_paragraph(role, at or datetime.now())

    def snapshot(self) -> ParagraphTranscripts:
        return self.paragraphs.snapshot()

    @property
    def audio_context_as_text(self) -> str:
        return render_audio_context(self._entries)

    def new_audio_context_since(self, since: datetime | None) -> tuple[str, datetime]:
        """Render only entries created after ``since``.

        Returns:
            Tuple of (rendered text, checkpoint to pass on the next call)
        """
        entries = [e for e in self._entries if since is None or e.created_at > since]
        return render_audio_context(entries), datetime.now()

    def clear(self) -> None:
        self._entries.clear()
        self.paragraphs.clear()
        logger.info("Transcript cleared")

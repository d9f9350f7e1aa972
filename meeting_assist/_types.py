"""Shared types and dataclasses for cross-module use."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class AudioSource(str, Enum):
    """Audio source feeding one capture pipeline."""

    MIC = "mic"
    SYSTEM = "system"

    @property
    def speaker(self) -> str:
        """Human-readable role used in prompts and transcripts."""
        return "Me" if self is AudioSource.MIC else "Them"


@dataclass(frozen=True)
class AudioBuffer:
    """Chunk of little-endian 16-bit PCM audio from one source."""

    source: AudioSource
    data: bytes
    sample_rate: int = 16000


@dataclass(frozen=True)
class TranscriptEntry:
    """Finalized piece of transcript text attributed to a speaker role."""

    text: str
    role: AudioSource
    created_at: datetime

    @property
    def roled_transcript(self) -> str:
        return f"[{self.role.speaker}]\nTranscription: {self.text}"

    @property
    def serialized(self) -> dict:
        return {
            "createdAt": self.created_at.isoformat(),
            "role": self.role.value,
            "text": self.text,
        }


@dataclass(frozen=True)
class TranscriptEvent:
    """Interim or final transcript emitted by the transcription provider."""

    transcript: str
    is_final: bool
    from_finalize: bool = False


@dataclass(frozen=True)
class SpeechStarted:
    """Provider detected the start of speech."""


@dataclass(frozen=True)
class UtteranceEnd:
    """Provider detected the end of an utterance."""


@dataclass(frozen=True)
class ProviderError:
    """Error reported in-band by the transcription provider."""

    message: str


ProviderEvent = TranscriptEvent | SpeechStarted | UtteranceEnd | ProviderError


@dataclass(frozen=True)
class CaptureStatus:
    """Native capture status as reported to the host."""

    is_capturing: bool = False
    microphone_active: bool = False
    system_audio_active: bool = False


@dataclass(frozen=True)
class VolumeLevels:
    """Normalized volume levels in the [0, 1] range."""

    system: float
    microphone: float

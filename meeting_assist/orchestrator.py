"""Coordinates both capture pipelines, the transcript and compaction."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime

from meeting_assist._types import AudioSource, CaptureStatus
from meeting_assist.budget import (
    CompactionState,
    ContextBudget,
    TranscriptView,
    build_transcript_view,
)
from meeting_assist.capture import AudioCapture, CaptureState, state_name
from meeting_assist.summarizer import Summarizer
from meeting_assist.transcript import Transcript

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineStatus:
    """Snapshot of both capture machines and the compaction progress."""

    mic: CaptureState
    system: CaptureState
    capture: CaptureStatus
    compaction: CompactionState


class Orchestrator:
    """Wires mic and system captures into one transcript.

    Final transcripts from both sources are appended in arrival order. The
    budgeted transcript view is computed on demand and compaction only runs
    when the caller asks for it, one at a time.
    """

    def __init__(
        self,
        mic: AudioCapture,
        system: AudioCapture,
        transcript: Transcript,
        summarizer: Summarizer,
        budget: ContextBudget | None = None,
        paragraph_on_utterance_end: bool = True,
    ):
        """Initialize orchestrator with components.

        Args:
            mic: Microphone capture machine
            system: System audio capture machine
            transcript: Transcript receiving final transcripts of both sources
            summarizer: Provider used for compaction
            budget: Token allowances for the transcript view
            paragraph_on_utterance_end: End a paragraph whenever the provider
                reports the end of an utterance
        """
        self.mic = mic
        self.system = system
        self.transcript = transcript
        self.summarizer = summarizer
        self.budget = budget or ContextBudget()
        self.paragraph_on_utterance_end = paragraph_on_utterance_end

        self.compaction = CompactionState()
        self._captures = {AudioSource.MIC: mic, AudioSource.SYSTEM: system}
        self._compact_lock = asyncio.Lock()
        self._compactions: set[asyncio.Task] = set()
        self._closed = False
        self._shutdown_event = asyncio.Event()
        self._disposers = []

        logger.info("Orchestrator initialized")

    async def startup(self) -> None:
        """Subscribe to both captures and start capturing."""
        logger.info("Orchestrator startup")
        self._shutdown_event.clear()
        self._closed = False
        for source, capture in self._captures.items():
            self._disposers.append(capture.transcript_listeners.subscribe(self.transcript.add))
            if self.paragraph_on_utterance_end:
                self._disposers.append(
                    capture.utterance_end_listeners.subscribe(
                        lambda at, role=source: self.transcript.mark_end_of_paragraph(role, at)
                    )
                )
        await self.start()
        logger.info(
            "Orchestrator startup complete (mic=%s, system=%s)",
            state_name(self.mic.state),
            state_name(self.system.state),
        )

    async def run(self) -> None:
        """Capture until shutdown() is called or the task is cancelled."""
        await self.startup()
        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            logger.info("Orchestrator cancelled")
            await self.shutdown()
            raise

    async def shutdown(self) -> None:
        """Stop both captures and release the summarizer."""
        logger.info("Orchestrator shutdown starting")
        self._shutdown_event.set()
        self._closed = True
        await self.stop()
        await self._cancel_compactions()

        for dispose in self._disposers:
            dispose()
        self._disposers = []

        shutdown = getattr(self.summarizer, "shutdown", None)
        if shutdown is not None:
            try:
                await shutdown()
            except Exception as e:
                logger.warning("Error shutting down summarizer: %s", e)

        logger.info("Orchestrator shutdown complete")

    async def start(self) -> None:
        await asyncio.gather(self.mic.start(), self.system.start())

    async def stop(self) -> None:
        await asyncio.gather(self.mic.stop(), self.system.stop())

    async def retry(self) -> None:
        await asyncio.gather(self.mic.retry(), self.system.retry())

    def pause(self) -> None:
        self.mic.pause()
        self.system.pause()

    def resume(self) -> None:
        self.mic.resume()
        self.system.resume()

    async def end_paragraph(self, role: AudioSource) -> None:
        """Flush ``role``'s in-flight speech and close its paragraph."""
        await self._captures[role].commit_transcription()
        self.transcript.mark_end_of_paragraph(role, datetime.now())

    async def commit_transcriptions(self) -> str:
        """Finalize both sources and return the full audio context."""
        await asyncio.gather(self.mic.commit_transcription(), self.system.commit_transcription())
        return self.transcript.audio_context_as_text

    def transcript_view(self) -> TranscriptView:
        return build_transcript_view(
            self.transcript.audio_context_as_text,
            self.compaction.compacted_summary,
            self.compaction.compaction_counter,
            self.budget,
            self.summarizer,
        )

    async def compact(self) -> str:
        """Summarize the whole transcript and record the new summary.

        Raises:
            RuntimeError: If the summarizer fails (state is left unchanged)
            asyncio.CancelledError: If shutdown() interrupts the request
        """
        async with self._compact_lock:
            if self._closed:
                raise RuntimeError("Orchestrator is shut down")
            view = self.transcript_view()
            task = asyncio.create_task(view.compact())
            self._compactions.add(task)
            try:
                summary = await task
            finally:
                self._compactions.discard(task)
            self.compaction = self.compaction.applied(summary)
            logger.info("Compaction #%d applied", self.compaction.compaction_counter)
            return summary

    async def _cancel_compactions(self) -> None:
        """Cancel running summarizer requests before the client is closed."""
        if not self._compactions:
            return
        logger.info("Cancelling %d running compaction(s)", len(self._compactions))
        tasks = list(self._compactions)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def status(self) -> PipelineStatus:
        return PipelineStatus(
            mic=self.mic.state,
            system=self.system.state,
            capture=self.mic.router.status(),
            compaction=self.compaction,
        )

"""Streaming transcription session lifecycle for one audio source."""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime
from enum import Enum
from typing import Protocol

from meeting_assist._types import (
    AudioSource,
    ProviderError,
    ProviderEvent,
    SpeechStarted,
    TranscriptEntry,
    TranscriptEvent,
    UtteranceEnd,
)
from meeting_assist.config import SessionConfig
from meeting_assist.errors import AudioCaptureError, NetworkError
from meeting_assist.events import Listeners

logger = logging.getLogger(__name__)


class TranscriptionConnection(Protocol):
    """Open bidirectional stream to a transcription provider."""

    async def send_audio(self, data: bytes) -> None: ...

    async def send_control(self, message_type: str) -> None: ...

    def events(self) -> AsyncIterator[ProviderEvent]: ...

    async def close(self) -> None: ...


Connector = Callable[[], Awaitable[TranscriptionConnection]]


class SessionState(Enum):
    """Transcription session state."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERROR = "error"


class TranscriptionSession:
    """Turns one source's audio into interim and final transcript events.

    Audio is sent fire-and-forget through an outbox drained by a sender task.
    Every transcript event re-arms a heartbeat deadline; when it expires the
    session tears itself down and reports a network error exactly once.
    Reconnecting is left to the owner.
    """

    def __init__(
        self,
        source: AudioSource,
        connector: Connector,
        config: SessionConfig | None = None,
    ):
        """Initialize session.

        Args:
            source: Audio source whose transcripts this session produces
            connector: Coroutine function opening the provider connection
            config: Heartbeat, commit and keep-alive timing
        """
        self.source = source
        self.connector = connector
        self.config = config or SessionConfig()

        self.state = SessionState.CONNECTING
        self.partial_text: str | None = None

        self.transcript_listeners: Listeners[TranscriptEntry] = Listeners(
            f"{source.value}-transcript"
        )
        self.partial_listeners: Listeners[str | None] = Listeners(f"{source.value}-partial")
        self.error_listeners: Listeners[AudioCaptureError] = Listeners(f"{source.value}-error")
        self.utterance_end_listeners: Listeners[datetime] = Listeners(
            f"{source.value}-utterance-end"
        )

        self._connection: TranscriptionConnection | None = None
        self._outbox: asyncio.Queue[bytes | str] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._heartbeat: asyncio.TimerHandle | None = None
        self._heartbeat_paused = False
        self._commit: asyncio.Future | None = None
        self._commit_timer: asyncio.TimerHandle | None = None
        self._closing: asyncio.Task | None = None
        self._disposed = False

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    async def connect(self) -> None:
        """Open the provider connection and start streaming.

        Raises:
            RuntimeError: If the session was already connected or disposed
            NetworkError: If the connection cannot be opened
        """
        if self.state is not SessionState.CONNECTING or self._disposed:
            raise RuntimeError(f"Cannot connect session in {self.state.value} state")

        try:
            connection = await self.connector()
        except asyncio.CancelledError:
            self.state = SessionState.CLOSED
            raise
        except NetworkError:
            self.state = SessionState.ERROR
            raise
        except Exception as e:
            self.state = SessionState.ERROR
            logger.error("Failed to open %s transcription session: %s", self.source.value, e)
            raise NetworkError(f"Failed to open transcription session: {e}") from e

        if self._disposed:
            # disposed while connecting
            await connection.close()
            return

        self._connection = connection
        self.state = SessionState.OPEN
        self._tasks = [
            asyncio.create_task(self._send_loop()),
            asyncio.create_task(self._receive_loop()),
            asyncio.create_task(self._keepalive_loop()),
        ]
        self._arm_heartbeat()
        logger.info("Transcription session open for %s audio", self.source.value)

    def send_audio(self, data: bytes) -> None:
        """Queue a PCM buffer for sending; ignored unless the session is open."""
        if self.state is SessionState.OPEN:
            self._outbox.put_nowait(data)

    def commit_transcription(self) -> asyncio.Future:
        """Ask the provider to flush buffered audio into a final transcript.

        Best-effort: the returned future resolves when the provider answers
        with a from-finalize event or after commit_timeout, whichever is
        first. While a commit is pending the same future is returned.
        """
        loop = asyncio.get_running_loop()
        if self._commit is not None and not self._commit.done():
            return self._commit

        if self.state is not SessionState.OPEN:
            future = loop.create_future()
            future.set_result(None)
            return future

        self._commit = loop.create_future()
        self._outbox.put_nowait("Finalize")
        self._commit_timer = loop.call_later(self.config.commit_timeout, self._on_commit_timeout)
        logger.debug("Finalize requested for %s audio", self.source.value)
        return self._commit

    def pause_heartbeat(self) -> None:
        """Suspend the watchdog while no audio is being sent."""
        self._heartbeat_paused = True
        self._cancel_heartbeat()

    def resume_heartbeat(self) -> None:
        self._heartbeat_paused = False
        self._arm_heartbeat()

    async def dispose(self) -> None:
        """Close the session and release every pending caller; idempotent."""
        if self._disposed:
            return
        self._disposed = True

        was_open = self.state is SessionState.OPEN
        self.state = SessionState.CLOSED
        self._cancel_heartbeat()
        self._resolve_commit()

        if self._closing is not None:
            await self._closing
        else:
            await self._close_connection(graceful=was_open)
        logger.info("Transcription session closed for %s audio", self.source.value)

    def _handle_event(self, event: ProviderEvent) -> None:
        match event:
            case TranscriptEvent(transcript=text, is_final=False):
                self._arm_heartbeat()
                self._set_partial(text)
            case TranscriptEvent(transcript=text, is_final=True, from_finalize=from_finalize):
                self._arm_heartbeat()
                self._set_partial(None)
                if text:
                    entry = TranscriptEntry(text=text, role=self.source, created_at=datetime.now())
                    self.transcript_listeners.emit(entry)
                if from_finalize:
                    self._resolve_commit()
            case SpeechStarted():
                if self.partial_text is None:
                    self._set_partial("")
            case UtteranceEnd():
                logger.debug("Utterance ended on %s audio", self.source.value)
                self.utterance_end_listeners.emit(datetime.now())
            case ProviderError(message=message):
                logger.error("Provider error on %s audio: %s", self.source.value, message)
                self._fail(NetworkError(f"Transcription provider error: {message}"))

    def _set_partial(self, text: str | None) -> None:
        if text == self.partial_text:
            return
        self.partial_text = text
        self.partial_listeners.emit(text)

    async def _send_loop(self) -> None:
        while True:
            item = await self._outbox.get()
            try:
                if isinstance(item, bytes):
                    await self._connection.send_audio(item)
                else:
                    await self._connection.send_control(item)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Failed to send to %s transcription session: %s", self.source.value, e)
                self._fail(NetworkError(f"Failed to send audio: {e}"))
                return

    async def _receive_loop(self) -> None:
        try:
            async for event in self._connection.events():
                self._handle_event(event)
                if self.state is not SessionState.OPEN:
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Transcription stream for %s audio failed: %s", self.source.value, e)
            self._fail(NetworkError(f"Transcription connection failed: {e}"))
            return

        if self.state is SessionState.OPEN:
            logger.warning("Transcription stream for %s audio ended unexpectedly", self.source.value)
            self._fail(NetworkError("Transcription connection closed"))

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.keepalive_interval)
            self._outbox.put_nowait("KeepAlive")

    def _arm_heartbeat(self) -> None:
        self._cancel_heartbeat()
        if self.state is not SessionState.OPEN or self._heartbeat_paused:
            return
        loop = asyncio.get_running_loop()
        self._heartbeat = loop.call_later(self.config.heartbeat_timeout, self._on_heartbeat_timeout)

    def _cancel_heartbeat(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None

    def _on_heartbeat_timeout(self) -> None:
        self._heartbeat = None
        logger.warning(
            "No transcript event on %s audio for %.1fs, session considered dead",
            self.source.value,
            self.config.heartbeat_timeout,
        )
        self._fail(NetworkError("Transcription heartbeat timed out"))

    def _on_commit_timeout(self) -> None:
        self._commit_timer = None
        if self._commit is not None and not self._commit.done():
            logger.warning(
                "Finalize on %s audio not confirmed within %.1fs",
                self.source.value,
                self.config.commit_timeout,
            )
        self._resolve_commit()

    def _resolve_commit(self) -> None:
        if self._commit_timer is not None:
            self._commit_timer.cancel()
            self._commit_timer = None
        commit, self._commit = self._commit, None
        if commit is not None and not commit.done():
            commit.set_result(None)

    def _fail(self, error: AudioCaptureError) -> None:
        """Tear down after a failure and report it once."""
        if self.state is not SessionState.OPEN:
            return
        self.state = SessionState.ERROR
        self._cancel_heartbeat()
        self._resolve_commit()
        self._closing = asyncio.create_task(self._close_connection(graceful=False))
        self.error_listeners.emit(error)

    async def _close_connection(self, graceful: bool) -> None:
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current and not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = []

        connection, self._connection = self._connection, None
        if connection is None:
            return
        if graceful:
            try:
                await connection.send_control("CloseStream")
            except Exception as e:
                logger.debug("Failed to send CloseStream: %s", e)
        try:
            await connection.close()
        except Exception as e:
            logger.warning("Error closing %s transcription connection: %s", self.source.value, e)

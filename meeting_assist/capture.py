"""Per-source audio capture state machine."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from meeting_assist._types import AudioSource, TranscriptEntry
from meeting_assist.errors import (
    ErrorDescription,
    ErrorKind,
    NetworkError,
    classify_error,
    describe_error,
)
from meeting_assist.events import Listeners
from meeting_assist.router import Attachment, AudioRouter
from meeting_assist.session import TranscriptionSession

logger = logging.getLogger(__name__)


class CancellationToken:
    """Token for abandoning an in-flight start.

    Checked after every await of the loading sequence so that a stop() racing
    with a slow connection attempt wins.
    """

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def is_cancelled(self) -> bool:
        return self._cancelled


@dataclass(frozen=True)
class NotRunning:
    """Capture is idle."""


@dataclass(frozen=True, eq=False)
class Loading:
    """Permission, session and source are being acquired."""

    token: CancellationToken


@dataclass(frozen=True)
class Running:
    """Audio is flowing to the transcription session unless paused."""

    paused: bool = False


@dataclass(frozen=True)
class Failed:
    """Capture failed and waits for an explicit retry."""

    kind: ErrorKind


CaptureState = NotRunning | Loading | Running | Failed

SessionFactory = Callable[[AudioSource], TranscriptionSession]


def state_name(state: CaptureState) -> str:
    match state:
        case NotRunning():
            return "not-running"
        case Loading():
            return "loading"
        case Running(paused=True):
            return "paused"
        case Running():
            return "running"
        case Failed(kind=kind):
            return f"error({kind.value})"


class AudioCapture:
    """Lifecycle of one source's capture and transcription session.

    Commands that are invalid in the current state are logged and ignored.
    Failures never escape as exceptions; they become a Failed state that only
    retry() leaves.
    """

    def __init__(
        self,
        source: AudioSource,
        router: AudioRouter,
        session_factory: SessionFactory,
    ):
        """Initialize capture.

        Args:
            source: Audio source captured by this machine
            router: Shared native stream router
            session_factory: Creates a transcription session for a source
        """
        self.source = source
        self.router = router
        self.session_factory = session_factory

        self.state: CaptureState = NotRunning()
        self.state_listeners: Listeners[CaptureState] = Listeners(f"{source.value}-state")
        self.transcript_listeners: Listeners[TranscriptEntry] = Listeners(
            f"{source.value}-capture-transcript"
        )
        self.partial_listeners: Listeners[str | None] = Listeners(
            f"{source.value}-capture-partial"
        )
        self.utterance_end_listeners: Listeners[datetime] = Listeners(
            f"{source.value}-capture-utterance-end"
        )

        self._session: TranscriptionSession | None = None
        self._attachment: Attachment | None = None
        self._disposers: list[Callable[[], None]] = []
        self._loading_task: asyncio.Task | None = None
        self._disposals: set[asyncio.Task] = set()

    @property
    def partial_text(self) -> str | None:
        return self._session.partial_text if self._session is not None else None

    async def start(self) -> None:
        """Begin capturing; only valid when not running."""
        match self.state:
            case NotRunning():
                await self._run_loading()
            case _:
                logger.warning(
                    "start() ignored for %s audio in %s state",
                    self.source.value,
                    state_name(self.state),
                )

    async def retry(self) -> None:
        """Start again after a failure; only valid in the error state."""
        match self.state:
            case Failed():
                await self._run_loading()
            case _:
                logger.warning(
                    "retry() ignored for %s audio in %s state",
                    self.source.value,
                    state_name(self.state),
                )

    def pause(self) -> None:
        match self.state:
            case Running(paused=False):
                self.router.set_paused(self._attachment, True)
                self._session.pause_heartbeat()
                self._transition(Running(paused=True))
            case Running(paused=True):
                logger.debug("%s audio already paused", self.source.value)
            case _:
                logger.warning(
                    "pause() ignored for %s audio in %s state",
                    self.source.value,
                    state_name(self.state),
                )

    def resume(self) -> None:
        match self.state:
            case Running(paused=True):
                self.router.set_paused(self._attachment, False)
                self._session.resume_heartbeat()
                self._transition(Running(paused=False))
            case Running(paused=False):
                logger.debug("%s audio already running", self.source.value)
            case _:
                logger.warning(
                    "resume() ignored for %s audio in %s state",
                    self.source.value,
                    state_name(self.state),
                )

    async def stop(self) -> None:
        """Cancel loading, tear down the session and return to not running.

        Idempotent: a second call finds nothing to tear down.
        """
        match self.state:
            case NotRunning():
                logger.debug("stop() for %s audio: already not running", self.source.value)
                await self._wait_disposals()
                return
            case Loading(token=token):
                token.cancel()
                if self._loading_task is not None and not self._loading_task.done():
                    self._loading_task.cancel()
            case Running() | Failed():
                pass

        session = self._release()
        self._transition(NotRunning())
        if session is not None:
            await session.dispose()
        await self._wait_disposals()

    def commit_transcription(self) -> asyncio.Future:
        """Best-effort flush of the current utterance into a final transcript."""
        if self._session is not None:
            return self._session.commit_transcription()
        future = asyncio.get_running_loop().create_future()
        future.set_result(None)
        return future

    def error_description(self) -> ErrorDescription | None:
        match self.state:
            case Failed(kind=kind):
                return describe_error(kind, self.source)
            case _:
                return None

    async def _run_loading(self) -> None:
        token = CancellationToken()
        self._transition(Loading(token))
        task = asyncio.create_task(self._load(token))
        self._loading_task = task
        try:
            await task
        except asyncio.CancelledError:
            if not token.is_cancelled():
                # caller cancelled, not stop()
                token.cancel()
                self._discard(self._release())
                self._transition(NotRunning())
                raise
            logger.info("Loading %s audio cancelled", self.source.value)
        finally:
            if self._loading_task is task:
                self._loading_task = None

    async def _load(self, token: CancellationToken) -> None:
        try:
            await self.router.request_permission(self.source)
            if token.is_cancelled():
                return

            session = self.session_factory(self.source)
            self._session = session
            self._disposers = [
                session.transcript_listeners.subscribe(self.transcript_listeners.emit),
                session.partial_listeners.subscribe(self.partial_listeners.emit),
                session.utterance_end_listeners.subscribe(self.utterance_end_listeners.emit),
            ]
            await session.connect()
            if token.is_cancelled():
                return

            attachment = await self.router.attach(
                self.source,
                lambda buffer: session.send_audio(buffer.data),
                self._on_source_error,
            )
            if token.is_cancelled():
                self.router.detach(attachment)
                return
            self._attachment = attachment

            if not session.is_open:
                raise NetworkError("Transcription session closed while starting")
        except Exception as e:
            if token.is_cancelled():
                return
            kind = classify_error(e)
            logger.error("Failed to start %s audio capture (%s): %s", self.source.value, kind.value, e)
            session = self._release()
            self._transition(Failed(kind))
            if session is not None:
                await session.dispose()
            return

        self._disposers.append(session.error_listeners.subscribe(self._on_session_error))
        self._transition(Running(paused=False))

    def _on_session_error(self, error: Exception) -> None:
        self._fail_running(error, "transcription session")

    def _on_source_error(self, error: Exception) -> None:
        self._fail_running(error, "native audio source")

    def _fail_running(self, error: Exception, origin: str) -> None:
        match self.state:
            case Running():
                kind = classify_error(error)
                logger.error("%s audio %s failed (%s): %s", self.source.value, origin, kind.value, error)
                self._discard(self._release())
                self._transition(Failed(kind))
            case _:
                logger.debug("Ignoring %s error in %s state: %s", origin, state_name(self.state), error)

    def _release(self) -> TranscriptionSession | None:
        """Detach from the router and hand back the session for disposal."""
        if self._attachment is not None:
            self.router.detach(self._attachment)
            self._attachment = None
        for dispose in self._disposers:
            dispose()
        self._disposers = []
        session, self._session = self._session, None
        return session

    def _discard(self, session: TranscriptionSession | None) -> None:
        """Dispose ``session`` in the background."""
        if session is None:
            return
        task = asyncio.create_task(session.dispose())
        self._disposals.add(task)
        task.add_done_callback(self._disposals.discard)

    async def _wait_disposals(self) -> None:
        if self._disposals:
            await asyncio.gather(*self._disposals, return_exceptions=True)

    def _transition(self, new_state: CaptureState) -> None:
        old_state, self.state = self.state, new_state
        logger.info(
            "State transition (%s): %s -> %s",
            self.source.value,
            state_name(old_state),
            state_name(new_state),
        )
        self.state_listeners.emit(new_state)

"""Shared fakes standing in for audio hardware and the transcription provider."""

import asyncio
import json

import pytest

from meeting_assist._types import AudioSource, CaptureStatus
from meeting_assist.audio_source import NativeFrame
from meeting_assist.config import SessionConfig
from meeting_assist.session import TranscriptionSession

# 160 samples of amplitude 1000
LOUD_PCM = (1000).to_bytes(2, "little", signed=True) * 160
SILENT_PCM = b"\x00\x00" * 160


class FakeConnection:
    """In-memory transcription connection driven by the test."""

    def __init__(self):
        self.sent_audio: list[bytes] = []
        self.controls: list[str] = []
        self.closed = False
        self._events: asyncio.Queue = asyncio.Queue()

    async def send_audio(self, data: bytes) -> None:
        self.sent_audio.append(data)

    async def send_control(self, message_type: str) -> None:
        # encoded like the websocket connection does
        json.dumps({"type": message_type})
        self.controls.append(message_type)

    def push(self, event) -> None:
        """Deliver a provider event (or raise an exception from the stream)."""
        self._events.put_nowait(event)

    def end(self) -> None:
        """End the event stream as if the server closed it."""
        self._events.put_nowait(None)

    async def events(self):
        while True:
            event = await self._events.get()
            if event is None:
                return
            if isinstance(event, Exception):
                raise event
            yield event

    async def close(self) -> None:
        self.closed = True


class FakeNativeSource:
    """Native audio source whose frames are pushed by the test or a feeder task."""

    def __init__(
        self,
        mic: bool = True,
        system: bool = True,
        mic_permission: bool = True,
        system_permission: bool = True,
        feed_interval: float | None = 0.01,
        start_error: Exception | None = None,
    ):
        self.mic = mic
        self.system = system
        self.mic_permission = mic_permission
        self.system_permission = system_permission
        self.feed_interval = feed_interval
        self.start_error = start_error
        self.start_calls = 0
        self.stop_calls = 0
        self.last_options = None
        self._queue: asyncio.Queue | None = None
        self._feeder: asyncio.Task | None = None

    def start(self, options):
        if self.start_error is not None:
            raise self.start_error
        self.start_calls += 1
        self.last_options = options
        self._queue = asyncio.Queue()
        if self.feed_interval is not None:
            self._feeder = asyncio.get_running_loop().create_task(self._feed())
        return self._frames(self._queue)

    async def _feed(self):
        while True:
            self.push(
                mic=LOUD_PCM if self.mic else None,
                system=LOUD_PCM if self.system else None,
            )
            await asyncio.sleep(self.feed_interval)

    async def _frames(self, queue):
        while True:
            frame = await queue.get()
            if frame is None:
                return
            if isinstance(frame, Exception):
                raise frame
            yield frame

    def push(self, mic=None, system=None) -> None:
        if self._queue is not None:
            self._queue.put_nowait(NativeFrame(mic=mic, system=system))

    def fail(self, error: Exception) -> None:
        if self._queue is not None:
            self._queue.put_nowait(error)

    def stop(self) -> None:
        self.stop_calls += 1
        if self._feeder is not None:
            self._feeder.cancel()
            self._feeder = None
        if self._queue is not None:
            self._queue.put_nowait(None)
            self._queue = None

    async def request_microphone_permission(self) -> bool:
        return self.mic_permission

    async def request_system_audio_permission(self, use_core_audio: bool) -> bool:
        return self.system_permission

    def get_status(self) -> CaptureStatus:
        running = self._queue is not None
        return CaptureStatus(
            is_capturing=running,
            microphone_active=running and self.mic,
            system_audio_active=running and self.system,
        )


class FakeSummarizer:
    """Summarizer returning canned summaries and recording prompts."""

    def __init__(self, summary: str = "summary", error: Exception | None = None):
        self.summary = summary
        self.error = error
        self.calls: list[tuple[str, str]] = []

    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        self.calls.append((system_prompt, user_prompt))
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.summary


class CountingSession(TranscriptionSession):
    """Session recording how often it was disposed."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.dispose_calls = 0

    async def dispose(self) -> None:
        self.dispose_calls += 1
        await super().dispose()


class SessionFactory:
    """Creates sessions over fake connections and remembers them."""

    def __init__(self, config: SessionConfig | None = None):
        self.config = config or SessionConfig(
            heartbeat_timeout=5.0, commit_timeout=0.1, keepalive_interval=60.0
        )
        self.sessions: list[CountingSession] = []
        self.connections: list[FakeConnection] = []
        self.connect_error: Exception | None = None
        self.gate: asyncio.Event | None = None

    def __call__(self, source: AudioSource) -> CountingSession:
        connection = FakeConnection()
        self.connections.append(connection)

        async def connect():
            if self.gate is not None:
                await self.gate.wait()
            if self.connect_error is not None:
                raise self.connect_error
            return connection

        session = CountingSession(source, connect, self.config)
        self.sessions.append(session)
        return session


@pytest.fixture
def fast_session_config():
    """Session timing short enough for tests."""
    return SessionConfig(heartbeat_timeout=0.2, commit_timeout=0.1, keepalive_interval=60.0)


@pytest.fixture
def fake_connection():
    """Create a FakeConnection."""
    return FakeConnection()


@pytest.fixture
def connector(fake_connection):
    """Connector returning fake_connection."""

    async def _connect():
        return fake_connection

    return _connect


@pytest.fixture
def fake_native():
    """Create a FakeNativeSource feeding loud audio on both sides."""
    return FakeNativeSource()


@pytest.fixture
def fake_summarizer():
    """Create a FakeSummarizer."""
    return FakeSummarizer()


async def wait_until(predicate, timeout: float = 1.0, interval: float = 0.005) -> None:
    """Poll ``predicate`` until it is true or fail after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)

"""Tests for the streaming transcription session."""

import asyncio

import pytest

from conftest import FakeConnection, wait_until
from meeting_assist._types import (
    AudioSource,
    ProviderError,
    SpeechStarted,
    TranscriptEvent,
    UtteranceEnd,
)
from meeting_assist.config import SessionConfig
from meeting_assist.errors import ErrorKind, NetworkError
from meeting_assist.session import SessionState, TranscriptionSession


@pytest.fixture
def session(connector, fast_session_config):
    """Create a mic session over the fake connection."""
    return TranscriptionSession(AudioSource.MIC, connector, fast_session_config)


def collect(listeners):
    seen = []
    listeners.subscribe(seen.append)
    return seen


class TestConnect:
    """Test opening the session."""

    @pytest.mark.asyncio
    async def test_connect_opens_session(self, session):
        """A successful connect moves to open."""
        assert session.state is SessionState.CONNECTING
        await session.connect()
        assert session.state is SessionState.OPEN
        await session.dispose()

    @pytest.mark.asyncio
    async def test_connect_failure_raises_network_error(self, fast_session_config):
        """Connector errors become NetworkError and the error state."""

        async def failing():
            raise OSError("refused")

        session = TranscriptionSession(AudioSource.MIC, failing, fast_session_config)
        with pytest.raises(NetworkError, match="refused"):
            await session.connect()
        assert session.state is SessionState.ERROR

    @pytest.mark.asyncio
    async def test_connect_twice_rejected(self, session):
        """A session connects once."""
        await session.connect()
        with pytest.raises(RuntimeError):
            await session.connect()
        await session.dispose()

    @pytest.mark.asyncio
    async def test_dispose_while_connecting_closes_connection(self, fast_session_config):
        """A connection arriving after dispose is closed immediately."""
        connection = FakeConnection()
        gate = asyncio.Event()

        async def slow():
            await gate.wait()
            return connection

        session = TranscriptionSession(AudioSource.MIC, slow, fast_session_config)
        connect_task = asyncio.create_task(session.connect())
        await asyncio.sleep(0)
        await session.dispose()
        gate.set()
        await connect_task
        assert connection.closed
        assert session.state is SessionState.CLOSED


class TestAudio:
    """Test fire-and-forget audio sending."""

    @pytest.mark.asyncio
    async def test_audio_sent_in_order(self, session, fake_connection):
        """Queued buffers reach the connection in order."""
        await session.connect()
        session.send_audio(b"a")
        session.send_audio(b"b")
        await wait_until(lambda: len(fake_connection.sent_audio) == 2)
        assert fake_connection.sent_audio == [b"a", b"b"]
        await session.dispose()

    @pytest.mark.asyncio
    async def test_audio_ignored_before_open(self, session, fake_connection):
        """Buffers before connect are dropped."""
        session.send_audio(b"early")
        await session.connect()
        await asyncio.sleep(0.01)
        assert fake_connection.sent_audio == []
        await session.dispose()

    @pytest.mark.asyncio
    async def test_keepalive_sent_periodically(self, connector, fake_connection):
        """KeepAlive control messages are sent on the configured interval."""
        config = SessionConfig(heartbeat_timeout=5.0, commit_timeout=0.1, keepalive_interval=0.02)
        session = TranscriptionSession(AudioSource.MIC, connector, config)
        await session.connect()
        await wait_until(lambda: fake_connection.controls.count("KeepAlive") >= 2)
        await session.dispose()


class TestReconciliation:
    """Test interim/final handling."""

    @pytest.mark.asyncio
    async def test_interim_sets_partial_text(self, session, fake_connection):
        """Interim events replace the partial text."""
        partials = collect(session.partial_listeners)
        await session.connect()
        fake_connection.push(TranscriptEvent("hel", is_final=False))
        fake_connection.push(TranscriptEvent("hello", is_final=False))
        await wait_until(lambda: session.partial_text == "hello")
        assert partials == ["hel", "hello"]
        await session.dispose()

    @pytest.mark.asyncio
    async def test_final_emits_entry_and_clears_partial(self, session, fake_connection):
        """Final events clear the partial text and emit an entry."""
        entries = collect(session.transcript_listeners)
        await session.connect()
        fake_connection.push(TranscriptEvent("hello", is_final=False))
        fake_connection.push(TranscriptEvent("hello world", is_final=True))
        await wait_until(lambda: len(entries) == 1)
        assert entries[0].text == "hello world"
        assert entries[0].role is AudioSource.MIC
        assert session.partial_text is None
        await session.dispose()

    @pytest.mark.asyncio
    async def test_empty_final_emits_nothing(self, session, fake_connection):
        """Empty final transcripts are not emitted."""
        entries = collect(session.transcript_listeners)
        await session.connect()
        fake_connection.push(TranscriptEvent("", is_final=True))
        fake_connection.push(TranscriptEvent("after", is_final=True))
        await wait_until(lambda: len(entries) == 1)
        assert entries[0].text == "after"
        await session.dispose()

    @pytest.mark.asyncio
    async def test_entries_in_arrival_order(self, session, fake_connection):
        """Entries are emitted in event order with non-decreasing timestamps."""
        entries = collect(session.transcript_listeners)
        await session.connect()
        for i in range(5):
            fake_connection.push(TranscriptEvent(f"e{i}", is_final=True))
        await wait_until(lambda: len(entries) == 5)
        assert [e.text for e in entries] == [f"e{i}" for i in range(5)]
        assert all(a.created_at <= b.created_at for a, b in zip(entries, entries[1:]))
        await session.dispose()

    @pytest.mark.asyncio
    async def test_speech_started_seeds_empty_partial(self, session, fake_connection):
        """Speech start shows a listening affordance only when idle."""
        await session.connect()
        fake_connection.push(SpeechStarted())
        await wait_until(lambda: session.partial_text == "")
        fake_connection.push(TranscriptEvent("words", is_final=False))
        fake_connection.push(SpeechStarted())
        await wait_until(lambda: session.partial_text == "words")
        await asyncio.sleep(0.01)
        assert session.partial_text == "words"
        await session.dispose()

    @pytest.mark.asyncio
    async def test_utterance_end_notifies_listeners(self, session, fake_connection):
        """Utterance end events are relayed."""
        ends = collect(session.utterance_end_listeners)
        await session.connect()
        fake_connection.push(UtteranceEnd())
        await wait_until(lambda: len(ends) == 1)
        await session.dispose()


class TestHeartbeat:
    """Test the liveness watchdog."""

    @pytest.mark.asyncio
    async def test_silence_reports_network_error_once(self, session, fake_connection):
        """No events within the timeout yields exactly one network error."""
        errors = collect(session.error_listeners)
        await session.connect()
        await asyncio.sleep(0.5)
        assert len(errors) == 1
        assert errors[0].kind is ErrorKind.NETWORK
        assert session.state is SessionState.ERROR
        assert fake_connection.closed
        await session.dispose()
        assert len(errors) == 1

    @pytest.mark.asyncio
    async def test_events_keep_session_alive(self, session, fake_connection):
        """Regular transcript events re-arm the deadline."""
        errors = collect(session.error_listeners)
        await session.connect()
        for _ in range(6):
            await asyncio.sleep(0.1)
            fake_connection.push(TranscriptEvent("", is_final=False))
        assert errors == []
        assert session.is_open
        await session.dispose()

    @pytest.mark.asyncio
    async def test_paused_heartbeat_does_not_fire(self, session):
        """A paused watchdog never expires."""
        errors = collect(session.error_listeners)
        await session.connect()
        session.pause_heartbeat()
        await asyncio.sleep(0.4)
        assert errors == []
        session.resume_heartbeat()
        await asyncio.sleep(0.4)
        assert len(errors) == 1

    @pytest.mark.asyncio
    async def test_provider_error_reports_network_error(self, session, fake_connection):
        """In-band provider errors tear the session down."""
        errors = collect(session.error_listeners)
        await session.connect()
        fake_connection.push(ProviderError("bad audio"))
        await wait_until(lambda: len(errors) == 1)
        assert "bad audio" in str(errors[0])
        await session.dispose()

    @pytest.mark.asyncio
    async def test_unexpected_stream_end_reports_network_error(self, session, fake_connection):
        """The server closing the stream is a network error."""
        errors = collect(session.error_listeners)
        await session.connect()
        fake_connection.end()
        await wait_until(lambda: len(errors) == 1)
        assert session.state is SessionState.ERROR

    @pytest.mark.asyncio
    async def test_stream_exception_reports_network_error(self, session, fake_connection):
        """A failing receive loop is a network error."""
        errors = collect(session.error_listeners)
        await session.connect()
        fake_connection.push(ConnectionResetError("reset"))
        await wait_until(lambda: len(errors) == 1)
        assert isinstance(errors[0], NetworkError)


class TestCommit:
    """Test the finalize handshake."""

    @pytest.mark.asyncio
    async def test_commit_resolves_on_from_finalize(self, session, fake_connection):
        """The future resolves when the finalize reply arrives."""
        await session.connect()
        future = session.commit_transcription()
        await wait_until(lambda: "Finalize" in fake_connection.controls)
        assert not future.done()
        fake_connection.push(TranscriptEvent("done", is_final=True, from_finalize=True))
        await asyncio.wait_for(future, 0.05)
        await session.dispose()

    @pytest.mark.asyncio
    async def test_commit_times_out(self, session, caplog):
        """Without a reply the future resolves after the timeout and is logged."""
        await session.connect()
        future = session.commit_transcription()
        await asyncio.wait_for(future, 0.5)
        assert "not confirmed" in caplog.text
        await session.dispose()

    @pytest.mark.asyncio
    async def test_pending_commit_is_shared(self, session, fake_connection):
        """A second commit while pending returns the same future and sends one flush."""
        await session.connect()
        first = session.commit_transcription()
        second = session.commit_transcription()
        assert first is second
        await first
        assert fake_connection.controls.count("Finalize") == 1
        await session.dispose()

    @pytest.mark.asyncio
    async def test_commit_when_not_open_is_resolved(self, session):
        """Committing a session that is not open is a no-op."""
        future = session.commit_transcription()
        assert future.done()

    @pytest.mark.asyncio
    async def test_dispose_resolves_pending_commit(self, connector, fake_connection):
        """dispose() never leaves a dangling commit."""
        config = SessionConfig(heartbeat_timeout=5.0, commit_timeout=5.0, keepalive_interval=60.0)
        session = TranscriptionSession(AudioSource.SYSTEM, connector, config)
        await session.connect()
        future = session.commit_transcription()
        await session.dispose()
        assert future.done()


class TestDispose:
    """Test teardown."""

    @pytest.mark.asyncio
    async def test_dispose_closes_stream_gracefully(self, session, fake_connection):
        """CloseStream is sent before the connection closes."""
        await session.connect()
        await session.dispose()
        assert fake_connection.controls[-1] == "CloseStream"
        assert fake_connection.closed
        assert session.state is SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_dispose_is_idempotent(self, session, fake_connection):
        """A second dispose does nothing."""
        await session.connect()
        await session.dispose()
        await session.dispose()
        assert fake_connection.controls.count("CloseStream") == 1

    @pytest.mark.asyncio
    async def test_no_events_after_dispose(self, session, fake_connection):
        """Disposed sessions emit nothing and report no heartbeat error."""
        errors = collect(session.error_listeners)
        await session.connect()
        await session.dispose()
        await asyncio.sleep(0.3)
        assert errors == []

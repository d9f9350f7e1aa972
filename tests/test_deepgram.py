"""Tests for the Deepgram connection and message parsing."""

import json
import urllib.parse
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from websockets.exceptions import InvalidStatus

from meeting_assist._types import ProviderError, SpeechStarted, TranscriptEvent, UtteranceEnd
from meeting_assist.config import DeepgramConfig
from meeting_assist.deepgram import DeepgramConnection, build_url, parse_message
from meeting_assist.errors import NetworkError


def results(transcript: str, is_final: bool, from_finalize: bool = False) -> str:
    return json.dumps(
        {
            "type": "Results",
            "is_final": is_final,
            "from_finalize": from_finalize,
            "channel": {"alternatives": [{"transcript": transcript, "confidence": 0.9}]},
        }
    )


def invalid_status(status: int) -> InvalidStatus:
    response = MagicMock()
    response.status_code = status
    return InvalidStatus(response)


class TestBuildUrl:
    """Test listen URL construction."""

    def test_streaming_options(self):
        """The URL carries model, audio format and endpointing options."""
        url = build_url(DeepgramConfig(api_key="k"), sample_rate=16000)
        base, query = url.split("?", 1)
        params = dict(urllib.parse.parse_qsl(query))
        assert base == "wss://api.deepgram.com/v1/listen"
        assert params == {
            "model": "nova-3",
            "language": "en-US",
            "encoding": "linear16",
            "sample_rate": "16000",
            "channels": "1",
            "punctuate": "true",
            "smart_format": "true",
            "interim_results": "true",
            "endpointing": "200",
            "utterance_end_ms": "1000",
            "vad_events": "true",
        }

    def test_api_key_not_in_url(self):
        """Credentials travel in headers only."""
        assert "secret" not in build_url(DeepgramConfig(api_key="secret"))


class TestParseMessage:
    """Test mapping of provider messages."""

    def test_interim_result(self):
        """Non-final results become interim events with trimmed text."""
        assert parse_message(results("  hello ", False)) == TranscriptEvent("hello", False, False)

    def test_final_from_finalize(self):
        """The finalize marker is carried through."""
        assert parse_message(results("done", True, True)) == TranscriptEvent("done", True, True)

    def test_missing_alternatives(self):
        """Results without alternatives produce empty transcripts."""
        raw = json.dumps({"type": "Results", "is_final": True, "channel": {}})
        assert parse_message(raw) == TranscriptEvent("", True, False)

    def test_speech_started_and_utterance_end(self):
        """VAD events are mapped."""
        assert parse_message('{"type": "SpeechStarted"}') == SpeechStarted()
        assert parse_message('{"type": "UtteranceEnd"}') == UtteranceEnd()

    def test_error(self):
        """Error messages become provider errors."""
        raw = json.dumps({"type": "Error", "description": "bad audio"})
        assert parse_message(raw) == ProviderError("bad audio")

    @pytest.mark.parametrize(
        "raw", ['{"type": "Metadata", "request_id": "x"}', '{"type": "Other"}', "not json", "[1]"]
    )
    def test_ignored_messages(self, raw):
        """Metadata, unknown and malformed messages are ignored."""
        assert parse_message(raw) is None


class TestDeepgramConnection:
    """Test connection handshake and streaming."""

    @pytest.mark.asyncio
    async def test_connect_sends_token_header(self):
        """The API key is sent as a Token authorization header."""
        websocket = AsyncMock()
        with patch("meeting_assist.deepgram.websockets.connect", new=AsyncMock(return_value=websocket)) as connect:
            connection = await DeepgramConnection.connect(DeepgramConfig(api_key="key"), 16000)

        kwargs = connect.call_args.kwargs
        assert kwargs["additional_headers"] == {"Authorization": "Token key"}
        assert kwargs["max_size"] is None
        assert isinstance(connection, DeepgramConnection)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,message",
        [(401, "Invalid Deepgram API key"), (429, "rate limit"), (503, "server error"), (400, "HTTP 400")],
    )
    async def test_handshake_status_mapped(self, status, message):
        """Handshake rejections become descriptive network errors."""
        with patch(
            "meeting_assist.deepgram.websockets.connect",
            new=AsyncMock(side_effect=invalid_status(status)),
        ):
            with pytest.raises(NetworkError, match=message):
                await DeepgramConnection.connect(DeepgramConfig(api_key="key"))

    @pytest.mark.asyncio
    async def test_os_error_mapped(self):
        """Socket failures become network errors."""
        with patch(
            "meeting_assist.deepgram.websockets.connect",
            new=AsyncMock(side_effect=ConnectionRefusedError("refused")),
        ):
            with pytest.raises(NetworkError, match="Failed to connect"):
                await DeepgramConnection.connect(DeepgramConfig(api_key="key"))

    @pytest.mark.asyncio
    async def test_send_and_control(self):
        """Audio is sent as bytes and controls as JSON."""
        websocket = AsyncMock()
        connection = DeepgramConnection(websocket)
        await connection.send_audio(b"\x01\x02")
        await connection.send_control("Finalize")
        assert websocket.send.await_args_list[0].args == (b"\x01\x02",)
        assert json.loads(websocket.send.await_args_list[1].args[0]) == {"type": "Finalize"}

    @pytest.mark.asyncio
    async def test_events_skip_ignored_messages(self):
        """Only meaningful messages are yielded."""

        class FakeSocket:
            def __aiter__(self):
                async def gen():
                    yield '{"type": "Metadata"}'
                    yield results("hi", True)

                return gen()

        events = [event async for event in DeepgramConnection(FakeSocket()).events()]
        assert events == [TranscriptEvent("hi", True, False)]

"""Deepgram live-streaming transcription connection over websockets."""

import asyncio
import json
import logging
import urllib.parse
from collections.abc import AsyncIterator

import websockets
from websockets.exceptions import InvalidStatus, WebSocketException

from meeting_assist._types import (
    ProviderError,
    ProviderEvent,
    SpeechStarted,
    TranscriptEvent,
    UtteranceEnd,
)
from meeting_assist.config import DeepgramConfig
from meeting_assist.errors import NetworkError

logger = logging.getLogger(__name__)


def _flag(value: bool) -> str:
    return "true" if value else "false"


def build_url(config: DeepgramConfig, sample_rate: int = 16000) -> str:
    """Build the listen URL carrying the streaming options as query parameters."""
    params = {
        "model": config.model,
        "language": config.language,
        "encoding": "linear16",
        "sample_rate": str(sample_rate),
        "channels": "1",
        "punctuate": _flag(config.punctuate),
        "smart_format": _flag(config.smart_format),
        "interim_results": "true",
        "endpointing": str(config.endpointing),
        "utterance_end_ms": str(config.utterance_end_ms),
        "vad_events": _flag(config.vad_events),
    }
    return config.url + "?" + urllib.parse.urlencode(params)


def parse_message(raw: str | bytes) -> ProviderEvent | None:
    """Map one Deepgram JSON message to a provider event.

    Returns:
        The event, or None for messages with no meaning to the session
    """
    try:
        message = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring malformed Deepgram message")
        return None
    if not isinstance(message, dict):
        return None

    match message.get("type"):
        case "Results":
            channel = message.get("channel") or {}
            alternatives = channel.get("alternatives") or [{}]
            transcript = (alternatives[0].get("transcript") or "").strip()
            return TranscriptEvent(
                transcript=transcript,
                is_final=bool(message.get("is_final", False)),
                from_finalize=bool(message.get("from_finalize", False)),
            )
        case "SpeechStarted":
            return SpeechStarted()
        case "UtteranceEnd":
            return UtteranceEnd()
        case "Error":
            description = message.get("description") or message.get("message") or "unknown error"
            return ProviderError(message=str(description))
        case "Metadata":
            logger.debug("Deepgram metadata: request_id=%s", message.get("request_id"))
            return None
        case other:
            logger.debug("Ignoring Deepgram message of type %s", other)
            return None


class DeepgramConnection:
    """Open Deepgram live-transcription websocket."""

    def __init__(self, websocket):
        self._websocket = websocket

    @classmethod
    async def connect(cls, config: DeepgramConfig, sample_rate: int = 16000) -> "DeepgramConnection":
        """Open a live-transcription websocket.

        Raises:
            NetworkError: If the handshake fails or times out
        """
        url = build_url(config, sample_rate)
        logger.debug("Connecting to Deepgram: %s", url)
        try:
            websocket = await asyncio.wait_for(
                websockets.connect(
                    url,
                    additional_headers={"Authorization": f"Token {config.api_key}"},
                    max_size=None,
                ),
                timeout=config.connect_timeout,
            )
        except InvalidStatus as e:
            status = e.response.status_code
            if status == 401:
                raise NetworkError("Invalid Deepgram API key") from e
            if status == 429:
                raise NetworkError("Deepgram rate limit exceeded, try again later") from e
            if status >= 500:
                raise NetworkError(f"Deepgram server error (HTTP {status})") from e
            raise NetworkError(f"Deepgram rejected the connection (HTTP {status})") from e
        except asyncio.TimeoutError as e:
            raise NetworkError(
                f"Timed out connecting to Deepgram after {config.connect_timeout:.1f}s"
            ) from e
        except (OSError, WebSocketException) as e:
            raise NetworkError(f"Failed to connect to Deepgram: {e}") from e

        logger.info("Connected to Deepgram (model=%s, language=%s)", config.model, config.language)
        return cls(websocket)

    async def send_audio(self, data: bytes) -> None:
        await self._websocket.send(data)

    async def send_control(self, message_type: str) -> None:
        await self._websocket.send(json.dumps({"type": message_type}))

    async def events(self) -> AsyncIterator[ProviderEvent]:
        """Yield provider events until the server closes the stream."""
        async for raw in self._websocket:
            event = parse_message(raw)
            if event is not None:
                yield event

    async def close(self) -> None:
        await self._websocket.close()

"""Native audio source capability and a sounddevice-backed implementation."""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol

import sounddevice

from meeting_assist._types import CaptureStatus
from meeting_assist.errors import NoDeviceError

logger = logging.getLogger(__name__)

# Common names of loopback devices exposing what the speakers play.
SYSTEM_AUDIO_DEVICE_NAMES = (
    "System Audio",
    "Stereo Mix",
    "What U Hear",
    "Wave Out",
    "CABLE Output",
    "VoiceMeeter",
    "BlackHole",
    "Soundflower",
    "WASAPI Loopback",
    "Monitor of",
)


@dataclass(frozen=True)
class CaptureOptions:
    """Options passed to the native source when capture starts."""

    use_core_audio: bool = False
    disable_echo_cancellation_on_headphones: bool = False
    enable_automatic_gain_compensation: bool = False
    sample_rate: int = 16000


@dataclass(frozen=True)
class NativeFrame:
    """One delivery from the native source; either side may be missing."""

    mic: bytes | None = None
    system: bytes | None = None


class NativeAudioSource(Protocol):
    """Platform capture capability producing PCM frames for mic and system audio."""

    def start(self, options: CaptureOptions) -> AsyncIterator[NativeFrame]: ...

    def stop(self) -> None: ...

    async def request_microphone_permission(self) -> bool: ...

    async def request_system_audio_permission(self, use_core_audio: bool) -> bool: ...

    def get_status(self) -> CaptureStatus: ...


class SounddeviceAudioSource:
    """Captures mic and loopback audio via sounddevice raw input streams.

    PortAudio callbacks run on their own threads and hand frames to the event
    loop without blocking; when the consumer falls behind the oldest frame is
    dropped.
    """

    def __init__(
        self,
        mic_device: int | str | None = None,
        system_device: int | str | None = None,
        chunk_size: int = 480,
        queue_size: int = 256,
    ):
        """Initialize audio source.

        Args:
            mic_device: Microphone device index or name (None for default)
            system_device: Loopback device index or name (None to auto-detect)
            chunk_size: Frames per delivered buffer
            queue_size: Maximum frames buffered before dropping the oldest
        """
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if queue_size <= 0:
            raise ValueError("queue_size must be positive")

        self.mic_device = mic_device
        self.system_device = system_device
        self.chunk_size = chunk_size
        self.queue_size = queue_size

        self._mic_stream = None
        self._system_stream = None
        self._queue: asyncio.Queue[NativeFrame | None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._dropped = 0

        logger.info(
            "SounddeviceAudioSource initialized: mic=%s, system=%s, chunk_size=%d",
            mic_device if mic_device is not None else "default",
            system_device if system_device is not None else "auto",
            chunk_size,
        )

    def start(self, options: CaptureOptions) -> AsyncIterator[NativeFrame]:
        """Open the streams and return an iterator of frames until stop().

        Must be called from the event loop that consumes the frames. A source
        whose stream cannot be opened is reported inactive by get_status().

        Raises:
            RuntimeError: If capture is already running
            NoDeviceError: If neither stream can be opened
        """
        if self._queue is not None:
            raise RuntimeError("Audio capture already running")

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._dropped = 0

        try:
            self._mic_stream = self._open_stream(
                _resolve_device(self.mic_device),
                options.sample_rate,
                lambda data: NativeFrame(mic=data),
            )
        except Exception as e:
            logger.warning("Failed to open microphone stream: %s", e)
            self._mic_stream = None

        try:
            system_index = self._resolve_system_device()
            if system_index is None:
                logger.warning("No system audio device found")
            else:
                self._system_stream = self._open_stream(
                    system_index,
                    options.sample_rate,
                    lambda data: NativeFrame(system=data),
                )
        except Exception as e:
            logger.warning("Failed to open system audio stream: %s", e)
            self._system_stream = None

        if self._mic_stream is None and self._system_stream is None:
            self._queue = None
            raise NoDeviceError("No audio input device could be opened")

        logger.info(
            "Audio capture started (sample_rate=%d, microphone=%s, system_audio=%s)",
            options.sample_rate,
            self._mic_stream is not None,
            self._system_stream is not None,
        )
        return self._frames(self._queue)

    async def _frames(self, queue: asyncio.Queue) -> AsyncIterator[NativeFrame]:
        try:
            while True:
                frame = await queue.get()
                if frame is None:
                    break
                yield frame
        finally:
            if self._queue is queue:
                self.stop()

    def stop(self) -> None:
        """Close both streams and end the frame iterator."""
        for name in ("_mic_stream", "_system_stream"):
            stream = getattr(self, name)
            if stream is None:
                continue
            try:
                stream.stop()
                stream.close()
            except Exception as e:
                logger.warning("Error closing stream: %s", e)
            finally:
                setattr(self, name, None)

        if self._queue is not None:
            queue, self._queue = self._queue, None
            self._put(queue, None)
            if self._dropped:
                logger.warning("Dropped %d audio frames during capture", self._dropped)
            logger.info("Audio capture stopped")

    async def request_microphone_permission(self) -> bool:
        return await asyncio.to_thread(self._probe_permission, self.mic_device)

    async def request_system_audio_permission(self, use_core_audio: bool) -> bool:
        # Loopback devices are plain input devices here; core audio taps are not used.
        if use_core_audio:
            logger.debug("use_core_audio requested but not supported by sounddevice")
        return await asyncio.to_thread(self._probe_permission, self.system_device)

    def get_status(self) -> CaptureStatus:
        return CaptureStatus(
            is_capturing=self._queue is not None,
            microphone_active=self._mic_stream is not None,
            system_audio_active=self._system_stream is not None,
        )

    def _open_stream(self, device, sample_rate, wrap):
        def callback(indata, frames, time_info, status):
            if status:
                logger.warning("Audio stream status: %s", status)
            self._deliver(wrap(bytes(indata)))

        stream = sounddevice.RawInputStream(
            device=device,
            samplerate=sample_rate,
            channels=1,
            blocksize=self.chunk_size,
            dtype="int16",
            callback=callback,
        )
        stream.start()
        return stream

    def _deliver(self, frame: NativeFrame) -> None:
        """Hand a frame to the event loop (called from PortAudio threads)."""
        loop, queue = self._loop, self._queue
        if loop is None or queue is None:
            return
        try:
            loop.call_soon_threadsafe(self._put, queue, frame)
        except RuntimeError:
            # loop already closed
            pass

    def _put(self, queue: asyncio.Queue, frame: NativeFrame | None) -> None:
        if queue.full():
            queue.get_nowait()
            self._dropped += 1
        queue.put_nowait(frame)

    def _resolve_system_device(self) -> int | None:
        if self.system_device is not None:
            return _resolve_device(self.system_device)

        for idx, dev_info in _input_devices():
            name = dev_info.get("name", "")
            if any(candidate.lower() in name.lower() for candidate in SYSTEM_AUDIO_DEVICE_NAMES):
                logger.debug("Auto-detected system audio device [%d] %s", idx, name)
                return idx
        return None

    def _probe_permission(self, device) -> bool:
        try:
            stream = sounddevice.RawInputStream(
                device=_resolve_device(device),
                channels=1,
                dtype="int16",
            )
            stream.close()
        except PermissionError as e:
            logger.warning("Audio permission denied: %s", e)
            return False
        except Exception as e:
            # Device problems surface when capture starts.
            logger.debug("Permission probe inconclusive: %s", e)
        return True


def _input_devices() -> list[tuple[int, dict]]:
    try:
        device_list = sounddevice.query_devices()
        if isinstance(device_list, dict):
            device_list = [device_list]
    except Exception as e:
        logger.warning("Unable to enumerate audio devices: %s", e)
        return []
    return [
        (idx, dev_info)
        for idx, dev_info in enumerate(device_list)
        if dev_info.get("max_input_channels", 0) > 0
    ]


def _resolve_device(selection: int | str | None) -> int | None:
    """Resolve a device index or name to a sounddevice index.

    Raises:
        NoDeviceError: If a named device cannot be found
    """
    if selection is None or isinstance(selection, int):
        return selection

    target = selection.strip().lower()
    partial_matches: list[tuple[int, str]] = []
    available: list[str] = []

    for idx, dev_info in _input_devices():
        name = dev_info.get("name", f"Device {idx}")
        normalized = name.strip().lower()
        available.append(f"[{idx}] {name}")

        if normalized == target:
            logger.debug("Resolved audio device '%s' to index %d (exact match)", selection, idx)
            return idx

        if target in normalized:
            partial_matches.append((idx, name))

    if partial_matches:
        idx, name = partial_matches[0]
        logger.debug(
            "Resolved audio device '%s' to index %d via partial match (%s)",
            selection,
            idx,
            name,
        )
        return idx

    raise NoDeviceError(
        f"Audio device '{selection}' not found. Available devices: "
        f"{'; '.join(available) if available else 'none'}"
    )


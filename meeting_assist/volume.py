"""Adaptive volume normalization and throttled level emission."""

import asyncio
import logging
import time
from collections.abc import Callable

import numpy as np

logger = logging.getLogger(__name__)

INITIAL_MAX_VOLUME = 200.0
MAX_VOLUME_DECAY = 0.9
VOLUME_THROTTLE_INTERVAL = 0.1


def _make_silence_buffer(sample_count: int = 16000, seed: int = 0x5EED) -> bytes:
    """Low-level noise substituted for digital silence.

    Every sample is non-zero so the mean amplitude never reads as a dead channel.
    """
    rng = np.random.default_rng(seed)
    magnitudes = rng.integers(1, 17, size=sample_count)
    signs = rng.choice(np.array([-1, 1]), size=sample_count)
    return (magnitudes * signs).astype("<i2").tobytes()


SILENCE_BUFFER = _make_silence_buffer()


def mean_abs_volume(data: bytes) -> float:
    """Mean absolute amplitude of little-endian int16 PCM."""
    if len(data) < 2:
        return 0.0
    samples = np.frombuffer(data[: len(data) - len(data) % 2], dtype="<i2")
    return float(np.abs(samples.astype(np.int32)).mean())


def substitute_silence(data: bytes) -> bytes:
    """Replace an all-zero buffer with the same number of bytes of noise."""
    if not data or mean_abs_volume(data) != 0:
        return data
    if len(data) <= len(SILENCE_BUFFER):
        return SILENCE_BUFFER[: len(data)]
    repeats = len(data) // len(SILENCE_BUFFER) + 1
    return (SILENCE_BUFFER * repeats)[: len(data)]


class VolumeNormalizer:
    """Normalizes instantaneous volume against a decaying running maximum."""

    def __init__(self, floor: float = INITIAL_MAX_VOLUME, decay: float = MAX_VOLUME_DECAY):
        if floor <= 0:
            raise ValueError("floor must be positive")
        if not 0 < decay <= 1:
            raise ValueError("decay must be in (0, 1]")
        self.floor = floor
        self.decay = decay
        self.max_volume = floor

    def update(self, data: bytes) -> float:
        """Feed one buffer and return its normalized level in [0, 1]."""
        volume = mean_abs_volume(data)
        if volume == 0 and data:
            volume = mean_abs_volume(substitute_silence(data))
        if volume > self.max_volume:
            self.max_volume = volume
        else:
            self.max_volume = max(self.floor, self.max_volume * self.decay)
        return min(1.0, volume / self.max_volume)

    def reset(self) -> None:
        self.max_volume = self.floor


class Throttle:
    """Rate-limits a callback to one call per interval, keeping the latest value.

    A call arriving after a quiet period is delivered immediately. Calls inside
    the interval replace the pending value, which is delivered once the
    interval has elapsed (trailing edge).
    """

    def __init__(
        self,
        callback: Callable[..., None],
        interval: float = VOLUME_THROTTLE_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.callback = callback
        self.interval = interval
        self._clock = clock
        self._last_emit: float | None = None
        self._pending: tuple | None = None
        self._handle: asyncio.TimerHandle | None = None

    def __call__(self, *args) -> None:
        now = self._clock()
        if self._handle is None and (
            self._last_emit is None or now - self._last_emit >= self.interval
        ):
            self._emit(args, now)
            return

        self._pending = args
        if self._handle is None:
            delay = self.interval - (now - self._last_emit)
            loop = asyncio.get_running_loop()
            self._handle = loop.call_later(max(0.0, delay), self._flush)

    def _flush(self) -> None:
        self._handle = None
        if self._pending is None:
            return
        args, self._pending = self._pending, None
        self._emit(args, self._clock())

    def _emit(self, args: tuple, now: float) -> None:
        self._last_emit = now
        try:
            self.callback(*args)
        except Exception:
            logger.exception("Throttled callback failed")

    def cancel(self) -> None:
        """Drop any pending trailing call."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._pending = None

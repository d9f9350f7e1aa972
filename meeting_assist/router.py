"""Demultiplexes the shared native audio stream into per-source pipelines."""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable

from meeting_assist._types import AudioBuffer, AudioSource, CaptureStatus, VolumeLevels
from meeting_assist.audio_source import CaptureOptions, NativeAudioSource, NativeFrame
from meeting_assist.config import VolumeConfig
from meeting_assist.errors import (
    NoAudioError,
    NoDeviceError,
    PermissionDeniedError,
    UnknownCaptureError,
)
from meeting_assist.events import Listeners
from meeting_assist.volume import Throttle, VolumeNormalizer, substitute_silence

logger = logging.getLogger(__name__)


class Attachment:
    """One source's subscription to the native stream."""

    def __init__(
        self,
        source: AudioSource,
        on_buffer: Callable[[AudioBuffer], None],
        on_error: Callable[[Exception], None],
    ):
        self.source = source
        self.on_buffer = on_buffer
        self.on_error = on_error
        self.paused = False
        self.first_buffer = asyncio.Event()


class AudioRouter:
    """Owns the native audio stream shared by the mic and system pipelines.

    The native source delivers frames carrying both sides at once. Each
    frame is split by source, silence-substituted, volume-normalized and
    forwarded to that source's attachment unless it is paused. Volume levels
    for both sources are pushed through a trailing-edge throttle.
    """

    def __init__(
        self,
        native: NativeAudioSource,
        options: CaptureOptions | None = None,
        volume_config: VolumeConfig | None = None,
        first_buffer_timeout: float = 2.0,
    ):
        """Initialize router.

        Args:
            native: Platform capture capability
            options: Options passed to the native source on start
            volume_config: Volume normalization settings
            first_buffer_timeout: Seconds to wait for a source's first buffer
        """
        self.native = native
        self.options = options or CaptureOptions()
        self.volume_config = volume_config or VolumeConfig()
        self.first_buffer_timeout = first_buffer_timeout

        self.volume_listeners: Listeners[VolumeLevels] = Listeners("volume")

        self._attachments: dict[AudioSource, Attachment] = {}
        self._normalizers = {
            source: VolumeNormalizer(self.volume_config.floor, self.volume_config.decay)
            for source in AudioSource
        }
        self._levels = {source: 0.0 for source in AudioSource}
        self._throttle = Throttle(
            self.volume_listeners.emit, self.volume_config.throttle_interval
        )
        self._pump_task: asyncio.Task | None = None

    async def request_permission(self, source: AudioSource) -> None:
        """Ask the native source for capture permission.

        Raises:
            PermissionDeniedError: If access was denied
        """
        if source is AudioSource.MIC:
            granted = await self.native.request_microphone_permission()
        else:
            granted = await self.native.request_system_audio_permission(
                self.options.use_core_audio
            )
        if not granted:
            raise PermissionDeniedError(f"Permission to capture {source.value} audio was denied")
        logger.debug("Permission granted for %s audio", source.value)

    async def attach(
        self,
        source: AudioSource,
        on_buffer: Callable[[AudioBuffer], None],
        on_error: Callable[[Exception], None],
    ) -> Attachment:
        """Start routing ``source`` buffers to ``on_buffer``.

        Starts the native stream on first attach and waits for the first
        buffer of ``source``.

        Raises:
            RuntimeError: If ``source`` is already attached
            NoDeviceError: If the native source has no active device for ``source``
            NoAudioError: If no buffer arrives within first_buffer_timeout
        """
        if source in self._attachments:
            raise RuntimeError(f"{source.value} audio is already attached")

        if self._pump_task is None:
            frames = self.native.start(self.options)
            self._pump_task = asyncio.create_task(self._pump(frames))
            logger.info("Native audio stream started")

        status = self.native.get_status()
        active = (
            status.microphone_active if source is AudioSource.MIC else status.system_audio_active
        )
        if not active:
            if not self._attachments:
                self._stop_native()
            raise NoDeviceError(f"No active {source.value} audio device")

        attachment = Attachment(source, on_buffer, on_error)
        self._attachments[source] = attachment
        self._normalizers[source].reset()

        try:
            await asyncio.wait_for(attachment.first_buffer.wait(), self.first_buffer_timeout)
        except asyncio.TimeoutError:
            self.detach(attachment)
            raise NoAudioError(
                f"No {source.value} audio received within {self.first_buffer_timeout:.1f}s"
            ) from None
        except asyncio.CancelledError:
            self.detach(attachment)
            raise

        logger.info("Attached %s audio", source.value)
        return attachment

    def detach(self, attachment: Attachment) -> None:
        """Stop routing buffers to ``attachment``; safe to call twice."""
        if self._attachments.get(attachment.source) is not attachment:
            return
        del self._attachments[attachment.source]
        self._levels[attachment.source] = 0.0
        logger.info("Detached %s audio", attachment.source.value)
        if not self._attachments:
            self._stop_native()

    def set_paused(self, attachment: Attachment, paused: bool) -> None:
        """Drop or resume forwarding buffers for ``attachment``."""
        attachment.paused = paused
        if paused:
            self._levels[attachment.source] = 0.0
            self._emit_levels()

    def status(self) -> CaptureStatus:
        return self.native.get_status()

    @property
    def levels(self) -> VolumeLevels:
        return VolumeLevels(
            system=self._levels[AudioSource.SYSTEM],
            microphone=self._levels[AudioSource.MIC],
        )

    async def _pump(self, frames: AsyncIterator[NativeFrame]) -> None:
        try:
            async for frame in frames:
                self._on_frame(frame)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Native audio stream failed: %s", e, exc_info=True)
            self._fail(e)
            return

        if self._pump_task is asyncio.current_task():
            logger.warning("Native audio stream ended unexpectedly")
            self._fail(UnknownCaptureError("Native audio stream ended"))

    def _on_frame(self, frame: NativeFrame) -> None:
        for source, data in ((AudioSource.MIC, frame.mic), (AudioSource.SYSTEM, frame.system)):
            if data is None:
                continue
            attachment = self._attachments.get(source)
            if attachment is None or attachment.paused:
                self._levels[source] = 0.0
                continue

            data = substitute_silence(data)
            self._levels[source] = self._normalizers[source].update(data)
            attachment.first_buffer.set()
            try:
                attachment.on_buffer(AudioBuffer(source, data, self.options.sample_rate))
            except Exception:
                logger.exception("Failed to forward %s audio buffer", source.value)

        if self._attachments:
            self._emit_levels()

    def _emit_levels(self) -> None:
        self._throttle(self.levels)

    def _fail(self, error: Exception) -> None:
        attachments = list(self._attachments.values())
        self._attachments.clear()
        self._stop_native()
        for attachment in attachments:
            try:
                attachment.on_error(error)
            except Exception:
                logger.exception("Error handler for %s audio failed", attachment.source.value)

    def _stop_native(self) -> None:
        task, self._pump_task = self._pump_task, None
        self._throttle.cancel()
        for source in AudioSource:
            self._levels[source] = 0.0
        try:
            self.native.stop()
        except Exception as e:
            logger.warning("Error stopping native audio source: %s", e)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        logger.info("Native audio stream stopped")

"""Capture and transcription error taxonomy."""

import errno
import sys
from dataclasses import dataclass
from enum import Enum

from meeting_assist._types import AudioSource

APP_NAME = "Meeting Assist"

_NETWORK_ERRNOS = {
    errno.ECONNREFUSED,
    errno.ECONNRESET,
    errno.ECONNABORTED,
    errno.ENETUNREACH,
    errno.EHOSTUNREACH,
    errno.ETIMEDOUT,
}


class ErrorKind(str, Enum):
    """Kind of failure surfaced by a capture pipeline."""

    PERMISSION = "permission"
    DEVICE = "device"
    NO_AUDIO = "no-audio"
    NETWORK = "network"
    UNKNOWN = "unknown"


class AudioCaptureError(Exception):
    """Base exception for capture pipeline failures."""

    kind = ErrorKind.UNKNOWN


class PermissionDeniedError(AudioCaptureError):
    """Access to the microphone or system audio was denied."""

    kind = ErrorKind.PERMISSION


class NoDeviceError(AudioCaptureError):
    """No matching input device was found."""

    kind = ErrorKind.DEVICE


class NoAudioError(AudioCaptureError):
    """Device present but it produced no audio data."""

    kind = ErrorKind.NO_AUDIO


class NetworkError(AudioCaptureError):
    """Transcription connection failed, dropped, or stopped sending heartbeats."""

    kind = ErrorKind.NETWORK


class UnknownCaptureError(AudioCaptureError):
    """Unclassified capture failure."""

    kind = ErrorKind.UNKNOWN


def classify_error(error: BaseException) -> ErrorKind:
    """Map an exception to the error kind exposed to the host."""
    if isinstance(error, AudioCaptureError):
        return error.kind
    if isinstance(error, PermissionError):
        return ErrorKind.PERMISSION
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorKind.NETWORK
    if isinstance(error, OSError) and error.errno in _NETWORK_ERRNOS:
        return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN


@dataclass(frozen=True)
class ErrorDescription:
    """User-facing title, message and available actions for an error kind."""

    title: str
    message: str
    actions: tuple[str, ...]


def describe_error(
    kind: ErrorKind,
    source: AudioSource,
    platform: str | None = None,
) -> ErrorDescription:
    """Build the kind-appropriate message and retry affordance for the UI.

    Args:
        kind: Error kind of the failed capture
        source: Source whose capture failed
        platform: sys.platform override (defaults to the running platform)

    Returns:
        ErrorDescription with title, message and actions
    """
    platform = platform or sys.platform
    is_mic = source is AudioSource.MIC
    label = "microphone" if is_mic else "system audio"

    if kind is ErrorKind.PERMISSION:
        return ErrorDescription(
            title=f"Missing {'Microphone' if is_mic else 'System Audio'} Permission",
            message=f"{APP_NAME} needs permission to capture your {label}",
            actions=("close", "settings" if platform == "darwin" else "retry"),
        )
    if kind is ErrorKind.DEVICE:
        return ErrorDescription(
            title="No Microphone Found" if is_mic else "No System Audio",
            message=f"{APP_NAME} couldn't find your {label} device, please try again",
            actions=("close", "retry"),
        )
    if kind is ErrorKind.NO_AUDIO:
        return ErrorDescription(
            title="No Microphone Audio" if is_mic else "No System Audio",
            message=f"{APP_NAME} couldn't capture audio from your {label}, please try again",
            actions=("close", "retry"),
        )
    if kind is ErrorKind.NETWORK:
        return ErrorDescription(
            title="Network Error",
            message=f"{APP_NAME}'s having trouble connecting, please try again later",
            actions=("close", "retry"),
        )
    return ErrorDescription(
        title="Unknown Error",
        message=f"{APP_NAME} couldn't capture audio, please try again",
        actions=("close", "retry"),
    )

"""Configuration loader and validation."""

import logging
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from meeting_assist.budget import ContextBudget

logger = logging.getLogger(__name__)

__all__ = [
    "AudioConfig",
    "DeepgramConfig",
    "SessionConfig",
    "VolumeConfig",
    "ParagraphConfig",
    "SummarizerConfig",
    "GeneralConfig",
    "Config",
    "ConfigError",
    "load_config",
    "discover_audio_devices",
]

SECTIONS = (
    "audio",
    "deepgram",
    "session",
    "volume",
    "paragraphs",
    "context",
    "summarizer",
    "general",
)


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


@dataclass
class AudioConfig:
    """Native audio capture configuration."""

    sample_rate: int = 16000
    chunk_size: int = 480
    mic_device: int | str | None = None
    system_device: int | str | None = None
    use_core_audio: bool = False
    disable_echo_cancellation_on_headphones: bool = False
    enable_automatic_gain_compensation: bool = False
    first_buffer_timeout: float = 2.0
    queue_size: int = 256


@dataclass
class DeepgramConfig:
    """Deepgram live transcription configuration."""

    api_key: str | None = None
    url: str = "wss://api.deepgram.com/v1/listen"
    model: str = "nova-3"
    language: str = "en-US"
    punctuate: bool = True
    smart_format: bool = True
    endpointing: int = 200
    utterance_end_ms: int = 1000
    vad_events: bool = True
    connect_timeout: float = 10.0


@dataclass
class SessionConfig:
    """Streaming transcription session timing."""

    heartbeat_timeout: float = 10.0
    commit_timeout: float = 1.0
    keepalive_interval: float = 8.0


@dataclass
class VolumeConfig:
    """Volume normalization settings."""

    floor: float = 200.0
    decay: float = 0.9
    throttle_interval: float = 0.1


@dataclass
class ParagraphConfig:
    """Paragraph segmentation settings."""

    max_chars: int = 100
    max_entries: int = 1000


@dataclass
class SummarizerConfig:
    """Summarization provider (OpenAI-compatible) configuration."""

    api_key: str | None = None
    model: str = "gpt-5-mini"
    temperature: float | None = None
    base_url: str | None = None
    timeout: float = 60.0


@dataclass
class GeneralConfig:
    """General application settings."""

    verbose: bool = False


@dataclass
class Config:
    """Main configuration container."""

    audio: AudioConfig = field(default_factory=AudioConfig)
    deepgram: DeepgramConfig = field(default_factory=DeepgramConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    volume: VolumeConfig = field(default_factory=VolumeConfig)
    paragraphs: ParagraphConfig = field(default_factory=ParagraphConfig)
    context: ContextBudget = field(default_factory=ContextBudget)
    summarizer: SummarizerConfig = field(default_factory=SummarizerConfig)
    general: GeneralConfig = field(default_factory=GeneralConfig)

    @classmethod
    def from_toml(
        cls,
        path: Path | None = None,
        *,
        env: Mapping[str, str] | None = None,
    ) -> "Config":
        """Load configuration from TOML file with environment overrides.

        Args:
            path: Explicit config file path. If None, searches in order:
                  1. MEETING_ASSIST_CONFIG env var
                  2. ./meeting-assist.toml
                  3. ~/.config/meeting-assist.toml
            env: Environment variables for overrides (defaults to os.environ)

        Returns:
            Loaded Config instance

        Raises:
            ConfigError: If config file not found or values are invalid
        """
        if env is None:
            import os

            env = os.environ

        resolved_path = _resolve_config_path(path, env)
        raw_data = _load_toml_file(resolved_path)

        try:
            coerced = _coerce_config_values(raw_data, env)
            return cls(
                audio=AudioConfig(**coerced["audio"]),
                deepgram=DeepgramConfig(**coerced["deepgram"]),
                session=SessionConfig(**coerced["session"]),
                volume=VolumeConfig(**coerced["volume"]),
                paragraphs=ParagraphConfig(**coerced["paragraphs"]),
                context=ContextBudget(**coerced["context"]),
                summarizer=SummarizerConfig(**coerced["summarizer"]),
                general=GeneralConfig(**coerced["general"]),
            )
        except TypeError as e:
            raise ConfigError(f"Invalid configuration values: {e}") from e

    def validate(
        self,
        *,
        require_deepgram: bool = True,
        require_summarizer: bool = False,
    ) -> None:
        """Validate configuration values.

        Args:
            require_deepgram: Require Deepgram credentials
            require_summarizer: Also require summarizer credentials

        Raises:
            ConfigError: If any value is out of range or a key is missing
        """
        validate_audio_config(self.audio)
        validate_deepgram_config(self.deepgram, require_key=require_deepgram)
        validate_session_config(self.session)
        validate_volume_config(self.volume)

        if self.paragraphs.max_chars <= 0:
            raise ConfigError(
                f"paragraphs.max_chars must be positive, got {self.paragraphs.max_chars}"
            )
        if self.context.transcript <= 0:
            raise ConfigError(
                f"context.transcript must be positive, got {self.context.transcript}"
            )
        if require_summarizer and not self.summarizer.api_key:
            raise ConfigError(
                "Summarizer API key is required. "
                "Set it in config file or via OPENAI_API_KEY environment variable."
            )


def _resolve_config_path(
    cli_path: Path | None,
    env: Mapping[str, str],
) -> Path:
    """Resolve configuration file path following search order.

    Raises:
        ConfigError: If no config file found in any location
    """
    candidates = []

    if cli_path:
        cli_path = Path(cli_path)
        if cli_path.exists():
            logger.info("Using config file: %s", cli_path.resolve())
            return cli_path.resolve()
        raise ConfigError(f"Config file not found: {cli_path}")

    if env_path := env.get("MEETING_ASSIST_CONFIG"):
        candidates.append(Path(env_path))

    candidates.append(Path("meeting-assist.toml"))
    candidates.append(Path.home() / ".config" / "meeting-assist.toml")

    for candidate in candidates:
        if candidate.exists():
            logger.info("Using config file: %s", candidate.resolve())
            return candidate.resolve()

    raise ConfigError(
        f"Config file not found. Searched: {', '.join(str(c) for c in candidates)}"
    )


def _load_toml_file(path: Path) -> dict:
    """Load and parse TOML configuration file.

    Raises:
        ConfigError: If file cannot be read or parsed
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except Exception as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e


def _coerce_config_values(raw_data: dict, env: Mapping[str, str]) -> dict:
    """Normalize raw TOML data for dataclass instantiation.

    Args:
        raw_data: Raw parsed TOML dictionary
        env: Environment variables for API key fallbacks

    Returns:
        Dictionary of section tables ready for dataclass instantiation
    """
    unknown = set(raw_data) - set(SECTIONS)
    if unknown:
        raise ConfigError(f"Unknown config section(s): {', '.join(sorted(unknown))}")

    coerced = {}
    for section in SECTIONS:
        table = raw_data.get(section, {})
        if not isinstance(table, dict):
            raise ConfigError(f"Section [{section}] must be a table")
        coerced[section] = dict(table)

    if not coerced["deepgram"].get("api_key"):
        coerced["deepgram"]["api_key"] = env.get("DEEPGRAM_API_KEY")

    if not coerced["summarizer"].get("api_key"):
        coerced["summarizer"]["api_key"] = env.get("OPENAI_API_KEY")

    return coerced


def discover_audio_devices() -> list[dict]:
    """Enumerate available audio capture devices.

    Returns:
        List of device dicts with keys: index, name, channels, sample_rate
        Returns empty list if sounddevice unavailable or no devices found
    """
    try:
        import sounddevice
    except ImportError:
        logger.warning("sounddevice not available, cannot enumerate audio devices")
        return []

    devices = []
    try:
        device_list = sounddevice.query_devices()
        if isinstance(device_list, dict):
            device_list = [device_list]

        for idx, dev_info in enumerate(device_list):
            if dev_info.get("max_input_channels", 0) > 0:
                devices.append(
                    {
                        "index": idx,
                        "name": dev_info.get("name", f"Device {idx}"),
                        "channels": dev_info.get("max_input_channels", 0),
                        "sample_rate": dev_info.get("default_samplerate", 0),
                    }
                )
    except Exception as e:
        logger.warning("Error discovering audio devices: %s", e)

    return devices


def validate_audio_config(audio_cfg: AudioConfig) -> None:
    """Validate audio capture configuration.

    Raises:
        ConfigError: If audio configuration is invalid
    """
    if audio_cfg.sample_rate <= 0:
        raise ConfigError(f"audio.sample_rate must be positive, got {audio_cfg.sample_rate}")
    if audio_cfg.chunk_size <= 0:
        raise ConfigError(f"audio.chunk_size must be positive, got {audio_cfg.chunk_size}")
    if audio_cfg.first_buffer_timeout <= 0:
        raise ConfigError(
            f"audio.first_buffer_timeout must be positive, got {audio_cfg.first_buffer_timeout}"
        )
    if audio_cfg.queue_size <= 0:
        raise ConfigError(f"audio.queue_size must be positive, got {audio_cfg.queue_size}")


def validate_deepgram_config(deepgram_cfg: DeepgramConfig, *, require_key: bool = True) -> None:
    """Validate Deepgram configuration.

    Raises:
        ConfigError: If Deepgram configuration is invalid
    """
    if require_key and not deepgram_cfg.api_key:
        raise ConfigError(
            "Deepgram API key is required. "
            "Set it in config file or via DEEPGRAM_API_KEY environment variable."
        )

    if not deepgram_cfg.url.startswith(("ws://", "wss://")):
        raise ConfigError(f"deepgram.url must be a ws:// or wss:// URL, got {deepgram_cfg.url}")

    if deepgram_cfg.connect_timeout <= 0:
        raise ConfigError(
            f"Deepgram connect_timeout must be positive, got {deepgram_cfg.connect_timeout}"
        )


def validate_session_config(session_cfg: SessionConfig) -> None:
    """Validate session timing.

    Raises:
        ConfigError: If a timeout is not positive
    """
    for name in ("heartbeat_timeout", "commit_timeout", "keepalive_interval"):
        value = getattr(session_cfg, name)
        if value <= 0:
            raise ConfigError(f"session.{name} must be positive, got {value}")


def validate_volume_config(volume_cfg: VolumeConfig) -> None:
    """Validate volume normalization settings.

    Raises:
        ConfigError: If settings are out of range
    """
    if volume_cfg.floor <= 0:
        raise ConfigError(f"volume.floor must be positive, got {volume_cfg.floor}")
    if not 0 < volume_cfg.decay <= 1:
        raise ConfigError(f"volume.decay must be in (0, 1], got {volume_cfg.decay}")
    if volume_cfg.throttle_interval < 0:
        raise ConfigError(
            f"volume.throttle_interval must be non-negative, got {volume_cfg.throttle_interval}"
        )


def load_config(
    path: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from TOML file.

    Convenience wrapper around Config.from_toml().

    Raises:
        ConfigError: If config cannot be loaded
    """
    return Config.from_toml(path, env=env)

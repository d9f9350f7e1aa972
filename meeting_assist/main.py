"""Typer CLI entrypoint for meeting-assist."""

import asyncio
import functools
import json
import logging
from pathlib import Path

import typer

from meeting_assist._types import AudioSource, TranscriptEntry, VolumeLevels
from meeting_assist.audio_source import CaptureOptions, NativeAudioSource, SounddeviceAudioSource
from meeting_assist.budget import ContextBudget, build_transcript_view, estimate_tokens
from meeting_assist.capture import AudioCapture, CaptureState, Failed
from meeting_assist.config import Config, ConfigError, discover_audio_devices, load_config
from meeting_assist.deepgram import DeepgramConnection
from meeting_assist.orchestrator import Orchestrator
from meeting_assist.paragraphs import format_time
from meeting_assist.router import AudioRouter
from meeting_assist.session import TranscriptionSession
from meeting_assist.summarizer import OpenAISummarizer
from meeting_assist.transcript import Transcript

app = typer.Typer(help="Live meeting transcription with a token-budgeted transcript")

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # basicConfig is a no-op once handlers exist
    logging.getLogger().setLevel(level)


def _build_summarizer(cfg: Config) -> OpenAISummarizer:
    return OpenAISummarizer(
        api_key=cfg.summarizer.api_key,
        model=cfg.summarizer.model,
        temperature=cfg.summarizer.temperature,
        base_url=cfg.summarizer.base_url,
        timeout=cfg.summarizer.timeout,
    )


def build_orchestrator(cfg: Config, native: NativeAudioSource | None = None) -> Orchestrator:
    """Assemble both capture pipelines from configuration.

    Args:
        cfg: Validated configuration
        native: Native audio source (defaults to sounddevice devices from cfg)

    Returns:
        Orchestrator ready to run
    """
    if native is None:
        native = SounddeviceAudioSource(
            mic_device=cfg.audio.mic_device,
            system_device=cfg.audio.system_device,
            chunk_size=cfg.audio.chunk_size,
            queue_size=cfg.audio.queue_size,
        )
    options = CaptureOptions(
        use_core_audio=cfg.audio.use_core_audio,
        disable_echo_cancellation_on_headphones=cfg.audio.disable_echo_cancellation_on_headphones,
        enable_automatic_gain_compensation=cfg.audio.enable_automatic_gain_compensation,
        sample_rate=cfg.audio.sample_rate,
    )
    router = AudioRouter(native, options, cfg.volume, cfg.audio.first_buffer_timeout)
    connector = functools.partial(DeepgramConnection.connect, cfg.deepgram, cfg.audio.sample_rate)

    def session_factory(source: AudioSource) -> TranscriptionSession:
        return TranscriptionSession(source, connector, cfg.session)

    return Orchestrator(
        mic=AudioCapture(AudioSource.MIC, router, session_factory),
        system=AudioCapture(AudioSource.SYSTEM, router, session_factory),
        transcript=Transcript(cfg.paragraphs.max_entries, cfg.paragraphs.max_chars),
        summarizer=_build_summarizer(cfg),
        budget=cfg.context,
    )


def _echo_paragraph(paragraph: TranscriptEntry) -> None:
    typer.echo(f"{paragraph.role.speaker} | {format_time(paragraph.created_at)}\n{paragraph.text}")


def _echo_volume(levels: VolumeLevels) -> None:
    typer.echo(f"volume mic={levels.microphone:.2f} system={levels.system:.2f}", err=True)


def _report_failures(capture: AudioCapture):
    def on_state(state: CaptureState) -> None:
        match state:
            case Failed():
                description = capture.error_description()
                typer.echo(f"{description.title}: {description.message}", err=True)

    return on_state


async def _run_pipeline(orchestrator: Orchestrator, save: Path | None) -> None:
    try:
        await orchestrator.run()
    finally:
        if save is not None:
            save.write_text(orchestrator.transcript.audio_context_as_text, encoding="utf-8")
            logger.info("Transcript saved to %s", save)


@app.command()
def run(
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging"
    ),
    volume: bool = typer.Option(
        False, "--volume", help="Print throttled volume levels to stderr"
    ),
    mic_device: str | None = typer.Option(
        None, "--mic-device", "-m", help="Override microphone device (index or name)"
    ),
    system_device: str | None = typer.Option(
        None, "--system-device", "-s", help="Override system audio device (index or name)"
    ),
    save: Path | None = typer.Option(
        None, "--save", help="Write the transcript to this file on exit"
    ),
) -> None:
    """Capture mic and system audio and print transcript paragraphs."""
    _setup_logging(verbose)
    try:
        cfg = load_config(config)
        logger.info("Loaded config from: %s", config or "default locations")
        if cfg.general.verbose and not verbose:
            _setup_logging(True)
        if mic_device is not None:
            cfg.audio.mic_device = int(mic_device) if mic_device.isdigit() else mic_device
        if system_device is not None:
            cfg.audio.system_device = int(system_device) if system_device.isdigit() else system_device
        cfg.validate()
        logger.info("Configuration validated successfully")

        orchestrator = build_orchestrator(cfg)
        orchestrator.transcript.paragraphs.paragraph_listeners.subscribe(_echo_paragraph)
        for capture in (orchestrator.mic, orchestrator.system):
            capture.state_listeners.subscribe(_report_failures(capture))
        if volume:
            orchestrator.mic.router.volume_listeners.subscribe(_echo_volume)

        logger.info("Starting meeting capture")
        asyncio.run(_run_pipeline(orchestrator, save))

    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except KeyboardInterrupt:
        logger.info("Capture interrupted by user")
        raise typer.Exit(0)
    except Exception as e:
        logger.error("Unexpected error: %s", e, exc_info=True)
        raise typer.Exit(1)


@app.command()
def list_audio(
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    json_output: bool = typer.Option(
        False, "--json", help="Output as JSON instead of table"
    ),
) -> None:
    """List available audio input devices."""
    _setup_logging(verbose)
    try:
        devices = discover_audio_devices()
        if not devices:
            logger.warning("No audio devices found")
            return

        if json_output:
            typer.echo(json.dumps(devices, indent=2))
        else:
            typer.echo("Available audio devices:")
            for dev in devices:
                typer.echo(
                    f"  [{dev['index']}] {dev['name']} "
                    f"({dev['channels']}ch, {dev['sample_rate']}Hz)"
                )
    except Exception as e:
        logger.error("Error listing audio devices: %s", e)
        raise typer.Exit(1)


@app.command()
def view(
    transcript_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Transcript text file"),
    compacted: Path | None = typer.Option(
        None, "--compacted", exists=True, dir_okay=False, help="File holding a previous compaction summary"
    ),
    counter: int = typer.Option(0, "--counter", min=0, help="Number of completed compactions"),
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file (for the context budget)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Print the budgeted view of a transcript."""
    _setup_logging(verbose)
    try:
        budget = load_config(config).context if config else ContextBudget()
        full = transcript_file.read_text(encoding="utf-8")
        summary = compacted.read_text(encoding="utf-8").strip() if compacted else None

        result = build_transcript_view(full, summary, counter, budget)
        typer.echo(
            f"tokens={estimate_tokens(full)} budget={budget.transcript * (counter + 1)} "
            f"overflow={result.is_overflow}",
            err=True,
        )
        typer.echo(result.transcript)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)


@app.command()
def compact(
    transcript_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Transcript text file"),
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Summarize a transcript with the compaction prompt."""
    _setup_logging(verbose)
    try:
        cfg = load_config(config)
        cfg.validate(require_deepgram=False, require_summarizer=True)
        full = transcript_file.read_text(encoding="utf-8")

        summarizer = _build_summarizer(cfg)
        result = build_transcript_view(full, None, 0, cfg.context, summarizer)

        async def _compact() -> str:
            try:
                return await result.compact()
            finally:
                await summarizer.shutdown()

        typer.echo(asyncio.run(_compact()))
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except RuntimeError as e:
        logger.error("Compaction failed: %s", e)
        raise typer.Exit(1)


if __name__ == "__main__":
    app()

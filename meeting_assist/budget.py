"""Token budgeting and compaction of the live transcript.

The overflow check and view construction are pure string operations so they
can run on every turn without blocking. The only network-bound step,
summarizing the transcript, is handed back to the caller as a deferred
``compact`` coroutine function and is never awaited here.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from meeting_assist.summarizer import Summarizer

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
TAIL_SHARE = 0.2
LONG_TAIL_SHARE = 0.4

COMPACTION_SYSTEM_PROMPT = """
<role>
  You are a powerful api that is responsible for distilling large texts into much smaller ones.
</role>
<goal>
  Provide a detailed but very concise summary.
</goal>
<compression-rules>
  Get straight to the point and NEVER add filler, preamble, or meta-comments.
  Focus on information that would be helpful for continuing the conversation.
  Judge what is important and should be preserved.

  Some compression rules are:
  - Include future, past and present goals
  - Include future, past and present actions
</compression-rules>
"""


@dataclass(frozen=True)
class ContextBudget:
    """Static token allowances for each part of the model input."""

    user: int = 1_000
    system: int = 4_000
    # ~8 messages per conversation plus a screenshot
    messages: int = 2_000
    # average transcript is ~6.5k tokens, a final summary ~200
    transcript: int = 3_000
    knowledge_base: int = 5_000

    @property
    def max_input_size(self) -> int:
        return self.user + self.system + self.messages + self.transcript + self.knowledge_base


@dataclass(frozen=True)
class CompactionState:
    """Latest compaction summary and how many compactions have happened."""

    compacted_summary: str | None = None
    compaction_counter: int = 0

    def applied(self, summary: str) -> "CompactionState":
        """Return the state after a successful compaction producing ``summary``."""
        return CompactionState(
            compacted_summary=summary,
            compaction_counter=self.compaction_counter + 1,
        )


@dataclass(frozen=True)
class TranscriptView:
    """Budgeted transcript plus a deferred compaction handle."""

    is_overflow: bool
    transcript: str
    compact: Callable[[], Awaitable[str]]


def estimate_tokens(text: str) -> int:
    """Approximate token count (4 characters per token)."""
    return max(0, round(len(text or "") / CHARS_PER_TOKEN))


def is_overflow(text: str, budget: float) -> bool:
    return estimate_tokens(text) > budget


def tail(text: str, take: float) -> str:
    """Return the last ``take`` tokens' worth of characters of ``text``."""
    chars = int(take * CHARS_PER_TOKEN)
    if chars <= 0:
        return ""
    return text[-chars:]


async def run_compaction(summarizer: Summarizer, text: str) -> str:
    """Summarize ``text`` with the compaction instructions."""
    logger.info("Compacting transcript (%d estimated tokens)", estimate_tokens(text))
    summary = await summarizer.generate(COMPACTION_SYSTEM_PROMPT, text)
    logger.info("Compaction produced %d estimated tokens", estimate_tokens(summary))
    return summary


def build_transcript_view(
    full: str,
    compacted: str | None,
    compaction_counter: int,
    budget: ContextBudget,
    summarizer: Summarizer | None = None,
) -> TranscriptView:
    """Decide what part of the transcript fits the transcript allowance.

    - not overflowing, nothing compacted: the full transcript
    - not overflowing, compacted before: compaction summary + short tail
    - overflowing, never compacted: a long tail
    - overflowing, compacted before: compaction summary + short tail

    The overflow threshold grows by one allowance per completed compaction.
    Tails are always cut from ``full``, never from the previous summary.

    Args:
        full: Entire transcript text so far
        compacted: Previous compaction summary, if any
        compaction_counter: Number of completed compactions
        budget: Token allowances
        summarizer: Provider used by the deferred ``compact`` handle; without
            one the view can still be read but ``compact`` raises RuntimeError

    Returns:
        TranscriptView with the overflow flag, the text to send and ``compact``
    """
    base = budget.transcript
    overflow = is_overflow(full, base * (compaction_counter + 1))

    async def compact() -> str:
        if summarizer is None:
            raise RuntimeError("No summarizer configured for compaction")
        return await run_compaction(summarizer, full)

    if overflow and (compaction_counter == 0 or not compacted):
        logger.debug("Transcript overflows with no compaction summary, using long tail")
        return TranscriptView(
            is_overflow=True,
            transcript=tail(full, base * LONG_TAIL_SHARE),
            compact=compact,
        )

    if compacted:
        transcript = "\n".join(
            ["<compacted>", compacted, "</compacted>", "[...]", tail(full, base * TAIL_SHARE)]
        )
    else:
        transcript = full

    return TranscriptView(is_overflow=overflow, transcript=transcript, compact=compact)

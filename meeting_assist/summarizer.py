"""Text summarization via an OpenAI-compatible chat completion API."""

import asyncio
import logging
import time
from typing import Protocol

logger = logging.getLogger(__name__)


class Summarizer(Protocol):
    """Capability: generate text given a system prompt and a user prompt."""

    async def generate(self, system_prompt: str, user_prompt: str) -> str: ...


class OpenAISummarizer:
    """Encapsulates the OpenAI client used for transcript compaction.

    Lazy-initializes the client on first request.
    """

    def __init__(
        self,
        api_key: str | None,
        model: str = "gpt-5-mini",
        temperature: float | None = None,
        base_url: str | None = None,
        timeout: float = 60.0,
    ):
        """Initialize summarizer.

        Args:
            api_key: OpenAI API key
            model: Chat completion model name
            temperature: Sampling temperature, omitted from the request when None
            base_url: Alternative OpenAI-compatible endpoint
            timeout: Request timeout in seconds
        """
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.base_url = base_url
        self.timeout = timeout
        self._client = None
        self._client_lock = asyncio.Lock()
        logger.info(
            "OpenAISummarizer initialized: model=%s, base_url=%s",
            model,
            base_url or "default",
        )

    async def _ensure_client_initialized(self) -> None:
        """Lazy-initialize the AsyncOpenAI client.

        Raises:
            RuntimeError: If client initialization fails
        """
        async with self._client_lock:
            if self._client is not None:
                return

            try:
                from openai import AsyncOpenAI

                self._client = AsyncOpenAI(
                    api_key=self.api_key,
                    base_url=self.base_url,
                    timeout=self.timeout,
                )
            except Exception as e:
                logger.error("Failed to initialize OpenAI client: %s", e)
                raise RuntimeError(f"Failed to initialize OpenAI client: {e}") from e

    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        """Run one chat completion and return its text.

        Raises:
            RuntimeError: If the request fails or returns no content
        """
        await self._ensure_client_initialized()

        request = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        if self.temperature is not None:
            request["temperature"] = self.temperature

        start_time = time.perf_counter()
        try:
            response = await self._client.chat.completions.create(**request)
        except Exception as e:
            logger.error("Summarization request failed: %s", e, exc_info=True)
            raise RuntimeError(f"Summarization failed: {e}") from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise RuntimeError("Summarization returned no content")

        logger.info(
            "Summarization completed in %.2f seconds (%d chars)",
            time.perf_counter() - start_time,
            len(content),
        )
        return content.strip()

    async def shutdown(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.close()
            self._client = None
            logger.debug("OpenAI client closed")

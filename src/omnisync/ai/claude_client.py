"""Claude access for the briefing generator.

The Anthropic SDK client is synchronous; calls are pushed to the default
executor so the event loop keeps serving sync jobs meanwhile.
"""
import asyncio
import logging
from typing import Optional

import anthropic

from omnisync.config import Settings, get_settings

logger = logging.getLogger(__name__)


class ClaudeClient:
    """Single-turn text generation: ``generate(prompt) -> str``."""

    def __init__(self, api_key: str, model: str = "claude-sonnet-4-5"):
        self._client = anthropic.Anthropic(api_key=api_key)
        self.model = model

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ClaudeClient":
        settings = settings or get_settings()
        return cls(api_key=settings.anthropic_api_key, model=settings.anthropic_model)

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: int = 2000,
    ) -> str:
        """
        Args:
            prompt: User turn, already DLP-redacted by the caller.
            system_prompt: Optional system instructions.
            max_tokens: Response cap.

        Returns:
            Concatenated text blocks of the response.
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            lambda: self._generate_sync(prompt, system_prompt, max_tokens),
        )

    def _generate_sync(
        self,
        prompt: str,
        system_prompt: Optional[str],
        max_tokens: int,
    ) -> str:
        kwargs = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            kwargs["system"] = system_prompt

        response = self._client.messages.create(**kwargs)
        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.debug(
                "Claude %s: %s input / %s output tokens",
                self.model, getattr(usage, "input_tokens", "?"), getattr(usage, "output_tokens", "?"),
            )
        # Tool-use and thinking blocks carry no briefing text
        return "".join(
            block.text for block in response.content if getattr(block, "type", "text") == "text"
        )

"""
Text Generation Engine: LLM-backed replies for AI automation rules.

The rule's prompt is the only input. Supports Anthropic and OpenAI; the
client is created lazily on first use so the service starts without AI
credentials when no AI rule is enabled.
"""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import AIConfig, get_settings

logger = structlog.get_logger()


class GenerationError(Exception):
    """The provider could not produce usable text."""


class TextGenerator:
    """
    Generates a short WhatsApp reply from a tenant prompt using Claude or OpenAI.
    """

    def __init__(self, config: Optional[AIConfig] = None):
        self.config = config or get_settings().ai
        self._client = None

    @property
    def is_openai(self) -> bool:
        return self.config.provider == "openai"

    async def _get_client(self):
        if self._client is None:
            try:
                if self.is_openai:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(api_key=self.config.api_key)
                else:
                    import anthropic
                    self._client = anthropic.AsyncAnthropic(api_key=self.config.api_key)
                logger.info("llm_client_initialized", provider=self.config.provider,
                            model=self.config.model)
            except Exception as e:
                logger.error("llm_client_init_failed", provider=self.config.provider, error=str(e))
                raise GenerationError(f"Cannot initialise {self.config.provider} client") from e
        return self._client

    async def _call_llm(self, prompt: str) -> str:
        """Unified LLM call that handles both Anthropic and OpenAI APIs."""
        client = await self._get_client()

        if self.is_openai:
            response = await client.chat.completions.create(
                model=self.config.model,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                messages=[
                    {"role": "system", "content": self.config.system_prompt},
                    {"role": "user", "content": prompt},
                ],
            )
            return response.choices[0].message.content or ""

        response = await client.messages.create(
            model=self.config.model,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            system=self.config.system_prompt,
            messages=[{"role": "user", "content": prompt}],
        )
        return "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )

    async def generate(self, prompt: str) -> str:
        """Return generated text, or raise GenerationError."""
        if not prompt.strip():
            raise GenerationError("Empty prompt")
        try:
            text = await self._call_llm(prompt)
        except GenerationError:
            raise
        except Exception as e:
            logger.error("llm_generation_failed", provider=self.config.provider, error=str(e))
            raise GenerationError(str(e)) from e

        text = (text or "").strip()
        if not text:
            raise GenerationError("Provider returned an empty response")
        logger.debug("llm_generation_complete", provider=self.config.provider, chars=len(text))
        return text

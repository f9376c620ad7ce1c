"""
Provider-agnostic async LLM client for ranking.

Supports OpenAI and Anthropic chat completions with a shared
system + user message interface that returns raw JSON text.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from .errors import ProviderMisconfiguredError

logger = logging.getLogger("marketplace_rag.common.llm_client")


class LLMClient:
    """Unified JSON completion client across LLM providers."""

    def __init__(
        self,
        provider: str = "openai",
        model: str = "",
        openai_api_key: Optional[str] = None,
        anthropic_api_key: Optional[str] = None,
        client: Any = None,
    ) -> None:
        self.provider = (provider or "openai").lower()
        self.model = model
        self._client = client

        if self._client is not None:
            return

        if self.provider == "openai":
            if not openai_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                from openai import AsyncOpenAI

                self._client = AsyncOpenAI(api_key=openai_api_key)
            except ImportError:
                logger.warning("openai package not installed")
            return

        if self.provider == "anthropic":
            if not anthropic_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                import anthropic

                self._client = anthropic.AsyncAnthropic(api_key=anthropic_api_key)
            except ImportError:
                logger.warning("anthropic package not installed")
            return

        logger.warning("Unsupported LLM provider: %s", self.provider)

    @property
    def is_available(self) -> bool:
        return self._client is not None

    async def complete_json(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        max_tokens: int = 500,
        temperature: float = 0.2,
        timeout: float = 10.0,
    ) -> str:
        """
        Request a JSON object completion.

        Returns:
            Raw response text (expected to be a JSON object)

        Raises:
            ProviderMisconfiguredError: if no client could be created
            RuntimeError: if the provider returned no content
        """
        if not self.is_available:
            raise ProviderMisconfiguredError("LLM client is not available")

        if self.provider == "openai":
            messages = []
            if system:
                messages.append({"role": "system", "content": system})
            messages.append({"role": "user", "content": prompt})
            response = await self._client.chat.completions.create(
                model=self.model,
                temperature=temperature,
                max_tokens=max_tokens,
                response_format={"type": "json_object"},
                messages=messages,
                timeout=timeout,
            )
            content = response.choices[0].message.content if response.choices else None
            if not content:
                raise RuntimeError("LLM returned empty content")
            return content.strip()

        if self.provider == "anthropic":
            kwargs = {}
            if system:
                kwargs["system"] = system
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[{"role": "user", "content": prompt}],
                timeout=timeout,
                **kwargs,
            )
            text = "".join(
                block.text for block in response.content if getattr(block, "type", "") == "text"
            )
            if not text:
                raise RuntimeError("LLM returned empty content")
            return text.strip()

        raise ProviderMisconfiguredError(f"Unsupported LLM provider: {self.provider}")

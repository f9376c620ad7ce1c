"""Tests for LLMClient provider abstraction."""

import logging
import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

from marketplace_rag.common.errors import ProviderMisconfiguredError
from marketplace_rag.common.llm_client import LLMClient


class TestLLMClientInit:
    def test_missing_openai_key_logs_info(self, caplog):
        with caplog.at_level(logging.INFO, logger="marketplace_rag.common.llm_client"):
            client = LLMClient(provider="openai")
        assert not client.is_available
        assert "API key not provided" in caplog.text

    def test_missing_anthropic_key_logs_info(self, caplog):
        with caplog.at_level(logging.INFO, logger="marketplace_rag.common.llm_client"):
            client = LLMClient(provider="anthropic")
        assert not client.is_available
        assert "API key not provided" in caplog.text

    def test_unsupported_provider_logs_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="marketplace_rag.common.llm_client"):
            client = LLMClient(provider="unsupported_xyz", openai_api_key="sk")
        assert not client.is_available
        assert "Unsupported" in caplog.text

    def test_openai_client_created_with_key(self):
        client = LLMClient(provider="openai", model="gpt-4o-mini", openai_api_key="sk-test")
        assert client.is_available


class TestLLMClientCompleteJson:
    @pytest.mark.asyncio
    async def test_raises_when_unavailable(self):
        client = LLMClient(provider="openai")
        with pytest.raises(ProviderMisconfiguredError, match="not available"):
            await client.complete_json("test")

    @pytest.mark.asyncio
    async def test_openai_request_shape(self):
        fake = Mock()
        fake.chat.completions.create = AsyncMock(return_value=SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=' {"results": []} '))]
        ))
        client = LLMClient(provider="openai", model="gpt-4o-mini", client=fake)

        text = await client.complete_json("user turn", system="rules", timeout=3.0)

        assert text == '{"results": []}'
        kwargs = fake.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["temperature"] == 0.2
        assert kwargs["max_tokens"] == 500
        assert kwargs["timeout"] == 3.0
        assert kwargs["messages"] == [
            {"role": "system", "content": "rules"},
            {"role": "user", "content": "user turn"},
        ]

    @pytest.mark.asyncio
    async def test_openai_empty_content_raises(self):
        fake = Mock()
        fake.chat.completions.create = AsyncMock(return_value=SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=None))]
        ))
        client = LLMClient(provider="openai", model="m", client=fake)

        with pytest.raises(RuntimeError, match="empty content"):
            await client.complete_json("q")

    @pytest.mark.asyncio
    async def test_anthropic_joins_text_blocks(self):
        fake = Mock()
        fake.messages.create = AsyncMock(return_value=SimpleNamespace(content=[
            SimpleNamespace(type="text", text='{"results":'),
            SimpleNamespace(type="text", text=" []}"),
        ]))
        client = LLMClient(provider="anthropic", model="claude", client=fake)

        text = await client.complete_json("q", system="rules")

        assert text == '{"results": []}'
        kwargs = fake.messages.create.call_args.kwargs
        assert kwargs["system"] == "rules"
        assert kwargs["messages"] == [{"role": "user", "content": "q"}]

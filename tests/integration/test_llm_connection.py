"""
Integration tests for LLMClient connection and functionality.

This module verifies connectivity to the OpenRouter API and the two call
shapes the pipeline relies on: complete generation and streaming.

Usage:
    # Run all LLM connection tests
    pytest tests/integration/test_llm_connection.py -v -m integration

Requirements:
    - LLM__OPENROUTER_API_KEY must be set in .env or the environment
"""

import pytest

from querystream.config import get_settings
from querystream.domain.base_enums import PlanTier
from querystream.domain.errors import LLMError
from querystream.infrastructure.llm_client import LLMClient


@pytest.fixture
def llm_config():
    """Get LLM configuration from settings."""
    settings = get_settings()
    return settings.llm


@pytest.fixture
async def llm_client(llm_config):
    """Create and connect LLM client."""
    client = LLMClient(llm_config)
    await client.connect()
    yield client
    if client.is_connected():
        await client.close()


@pytest.mark.integration
class TestLLMConnection:
    """Integration tests for LLM client connectivity."""

    @pytest.mark.asyncio
    async def test_basic_connection(self, llm_config):
        """Test basic LLM client connection and disconnection."""
        client = LLMClient(llm_config)

        await client.connect()
        assert client.is_connected()

        await client.close()
        assert not client.is_connected()

    @pytest.mark.asyncio
    async def test_config_applied(self, llm_config, llm_client):
        """Test that configuration is properly applied."""
        assert llm_client.config == llm_config
        assert llm_client.model_for_plan(None) == llm_config.default_model
        assert llm_client.model_for_plan(PlanTier.ENTERPRISE) == llm_config.enterprise_model

    @pytest.mark.asyncio
    async def test_generate_before_connect_fails(self, llm_config):
        client = LLMClient(llm_config)
        with pytest.raises(LLMError):
            await client.generate("Say 'Hello'")


@pytest.mark.integration
class TestGeneration:
    """Integration tests for complete text generation."""

    @pytest.mark.asyncio
    async def test_generate_simple_text(self, llm_client):
        response = await llm_client.generate("What is 2 + 2? Answer with just the number.")

        assert isinstance(response, str)
        assert "4" in response

    @pytest.mark.asyncio
    async def test_generate_with_plan_and_parameters(self, llm_client):
        response = await llm_client.generate(
            "Count from 1 to 3.",
            plan=PlanTier.FREE,
            temperature=0.1,
            max_tokens=100
        )

        assert len(response) > 0

    @pytest.mark.asyncio
    async def test_generate_with_system_prompt(self, llm_client):
        """The system prompt steers the answer toward SQL."""
        response = await llm_client.generate(
            "What does SELECT do in SQL?",
            system_prompt="You are a SQL expert. Answer questions about databases concisely."
        )

        assert any(word in response.lower() for word in ["select", "retrieve", "query", "data"])

    @pytest.mark.asyncio
    async def test_input_limit_enforced(self, llm_client):
        prompt = "a" * (llm_client.config.max_input_chars + 1)
        with pytest.raises(LLMError):
            await llm_client.generate(prompt)


@pytest.mark.integration
class TestStreaming:
    """Integration tests for streamed generation."""

    @pytest.mark.asyncio
    async def test_stream_yields_fragments(self, llm_client):
        fragments = [
            chunk async for chunk in llm_client.stream("List three colors, comma separated.")
        ]

        assert len(fragments) >= 1
        assert all(isinstance(f, str) and f for f in fragments)
        assert len("".join(fragments)) > 0

    @pytest.mark.asyncio
    async def test_stream_can_be_closed_early(self, llm_client):
        """Closing the iterator after the first fragment ends the stream cleanly."""
        stream = llm_client.stream("Write a long paragraph about databases.")
        first = await stream.__anext__()
        await stream.aclose()

        assert first

"""
LLM client for OpenRouter using LangChain.

This module provides an async LLM client that uses LangChain's ChatOpenAI
with OpenRouter API for SQL generation and narrative text, both as single
responses and as token streams.
"""

from contextlib import aclosing
from typing import AsyncIterator, List, Optional

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import SecretStr

from ..config import LLMConfig
from ..domain.base_enums import PlanTier
from ..domain.errors import LLMError
from ..utils.logging import get_module_logger
from ..utils.token_utils import InputValidator
from ..utils.tracing import current_trace_id


logger = get_module_logger()


class LLMClient:
    """
    LLM client using LangChain's ChatOpenAI with OpenRouter.

    This is a thin infrastructure layer for LLM operations using OpenRouter API.
    Prompt construction lives in the repositories that call it.

    Features:
    - OpenRouter API integration via LangChain
    - Model picked per plan tier
    - Token streaming via `stream()` for SSE endpoints
    - Structured logging with trace IDs
    - Automatic retry on transient failures (before the first token)
    - Input size validation against model context windows

    Usage:
        client = LLMClient(config)
        await client.connect()

        sql = await client.generate("...", system_prompt="You are a PostgreSQL expert.")

        async for token in client.stream("...", plan=PlanTier.GROWTH):
            ...

        await client.close()
    """

    def __init__(self, config: LLMConfig):
        """
        Initialize LLM client with configuration.

        Args:
            config: LLM configuration
        """
        self.config = config
        self._llm: Optional[ChatOpenAI] = None
        self._is_connected = False

        logger.info(
            "LLMClient initialized",
            default_model=config.default_model,
            base_url=config.base_url,
            sql_temperature=config.sql_temperature,
            max_tokens=config.max_tokens
        )

    async def connect(self) -> None:
        """
        Initialize LangChain ChatOpenAI client.

        Note: This creates the client configuration but doesn't make any API calls.
        Validation happens on first actual use.

        Raises:
            LLMError: If initialization fails
        """
        if self._is_connected:
            logger.warning("LLM client already connected")
            return

        trace_id = current_trace_id()
        logger.info("Initializing LLM client", trace_id=trace_id)

        try:
            # Note: Use max_completion_tokens (not deprecated max_tokens)
            self._llm = ChatOpenAI(
                model=self.config.default_model,
                api_key=SecretStr(self.config.openrouter_api_key),
                base_url=self.config.base_url,
                temperature=self.config.sql_temperature,
                max_completion_tokens=self.config.max_tokens,
                top_p=self.config.top_p,
                timeout=self.config.timeout_seconds,
                max_retries=self.config.max_retries
            )

            self._is_connected = True
            logger.info("LLM client initialized successfully", trace_id=trace_id)

        except Exception as e:
            error_msg = f"Failed to initialize LLM client: {e}"
            logger.error(error_msg, error_type=type(e).__name__, trace_id=trace_id)
            raise LLMError(error_msg) from e

    async def close(self) -> None:
        """Close LLM client and release resources."""
        trace_id = current_trace_id()
        logger.info("Closing LLM client", trace_id=trace_id)

        # LangChain ChatOpenAI doesn't need explicit cleanup
        self._is_connected = False
        self._llm = None

        logger.info("LLM client closed", trace_id=trace_id)

    def is_connected(self) -> bool:
        """Check if LLM client is connected."""
        return self._is_connected and self._llm is not None

    def model_for_plan(self, plan: Optional[PlanTier]) -> str:
        """Model name used for a plan tier."""
        if plan is None:
            return self.config.default_model
        return {
            PlanTier.FREE: self.config.free_model,
            PlanTier.STARTER: self.config.starter_model,
            PlanTier.GROWTH: self.config.growth_model,
            PlanTier.ENTERPRISE: self.config.enterprise_model,
        }[plan]

    def _prepare(
        self,
        prompt: str,
        system_prompt: Optional[str],
        plan: Optional[PlanTier],
        temperature: Optional[float],
        max_tokens: Optional[int],
    ):
        """Validate input size, build messages and bind per-call overrides."""
        if not self.is_connected() or self._llm is None:
            raise LLMError("LLM client is not connected")

        # Validate input character limit before API call
        try:
            InputValidator.validate_total_chars(
                prompt=prompt,
                system_prompt=system_prompt,
                max_chars=self.config.max_input_chars
            )
        except ValueError as e:
            raise LLMError(str(e)) from e

        messages: List[BaseMessage] = []
        if system_prompt:
            messages.append(SystemMessage(content=system_prompt))
        messages.append(HumanMessage(content=prompt))

        bind_kwargs = {"model": self.model_for_plan(plan)}
        if temperature is not None:
            bind_kwargs["temperature"] = temperature
        if max_tokens is not None:
            bind_kwargs["max_completion_tokens"] = max_tokens
        return self._llm.bind(**bind_kwargs), messages, bind_kwargs["model"]

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        plan: Optional[PlanTier] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """
        Generate a complete text response.

        Args:
            prompt: User prompt
            system_prompt: Optional system prompt for context
            plan: Plan tier selecting the model (default model when None)
            temperature: Optional temperature override (0.0-1.0)
            max_tokens: Optional max tokens override

        Returns:
            Generated text response

        Raises:
            LLMError: If generation fails or input exceeds the character limit
        """
        llm, messages, model = self._prepare(prompt, system_prompt, plan, temperature, max_tokens)
        trace_id = current_trace_id()

        logger.info(
            "Generating LLM response",
            model=model,
            prompt_length=len(prompt),
            system_prompt_length=len(system_prompt) if system_prompt else 0,
            temperature=temperature if temperature is not None else self.config.sql_temperature,
            trace_id=trace_id
        )

        try:
            response = await llm.ainvoke(messages)
        except Exception as e:
            error_msg = f"LLM generation failed: {e}"
            logger.error(error_msg, error_type=type(e).__name__, model=model, trace_id=trace_id)
            raise LLMError(error_msg) from e

        if not response or not response.content:
            raise LLMError("LLM returned empty response")

        content = str(response.content)
        logger.info("LLM response generated successfully", response_length=len(content), trace_id=trace_id)
        return content

    async def stream(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        plan: Optional[PlanTier] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        """
        Stream a response as text fragments.

        Closing the returned iterator (e.g. when the HTTP client disconnects)
        closes the underlying provider stream.

        Raises:
            LLMError: If the request fails before or during streaming
        """
        llm, messages, model = self._prepare(prompt, system_prompt, plan, temperature, max_tokens)
        trace_id = current_trace_id()

        logger.info("Streaming LLM response", model=model, prompt_length=len(prompt), trace_id=trace_id)

        total_chars = 0
        try:
            async with aclosing(llm.astream(messages)) as chunks:
                async for chunk in chunks:
                    text = chunk.content if isinstance(chunk.content, str) else "".join(
                        part.get("text", "") if isinstance(part, dict) else str(part) for part in chunk.content
                    )
                    if text:
                        total_chars += len(text)
                        yield text
        except LLMError:
            raise
        except Exception as e:
            error_msg = f"LLM streaming failed: {e}"
            logger.error(error_msg, error_type=type(e).__name__, model=model, chars_streamed=total_chars, trace_id=trace_id)
            raise LLMError(error_msg) from e

        logger.info("LLM stream finished", model=model, response_length=total_chars, trace_id=trace_id)

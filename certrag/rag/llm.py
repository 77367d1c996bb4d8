"""
FAA Certification RAG - LLM Service
Text completion against an OpenAI-compatible endpoint (GitHub Models by default)
"""

import json
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI, RateLimitError
from loguru import logger

from certrag.core.config import ConfigurationError


class LLMRateLimitError(RuntimeError):
    """The LLM provider rejected the call for rate limiting."""


def is_rate_limit_error(error: BaseException) -> bool:
    """Match on exception type, HTTP status, or message text."""
    if isinstance(error, (RateLimitError, LLMRateLimitError)):
        return True
    if getattr(error, "status_code", None) == 429:
        return True
    message = str(error).lower()
    return "429" in message or "rate_limit" in message or "rate limit" in message


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` block if the model added one."""
    text = text.strip()
    if "```json" in text:
        text = text.split("```json", 1)[1].split("```", 1)[0]
    elif text.startswith("```"):
        text = text.split("```", 2)[1]
    return text.strip()


def parse_json_reply(text: str) -> Any:
    """json.loads after fence stripping; raises ValueError on malformed output."""
    return json.loads(strip_code_fences(text))


class LLMService:
    """
    Async chat-completion client.

    Construction never fails: without an API key the service reports
    is_available=False and raises ConfigurationError only when called.
    """

    def __init__(
        self,
        api_key: str = "",
        endpoint: str = "https://models.github.ai/inference",
        model: str = "openai/gpt-4o",
        max_tokens: int = 2048,
        client: AsyncOpenAI = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.client = client

        if self.client is None and api_key:
            try:
                self.client = AsyncOpenAI(api_key=api_key, base_url=endpoint)
                logger.info(f"LLM service initialized with model: {self.model}")
            except Exception as e:
                logger.warning(f"LLM service initialization failed: {e}")
        elif self.client is None:
            logger.warning("LLM_API_KEY not set - LLM service will not be available")

    @property
    def is_available(self) -> bool:
        """Check if LLM service is available."""
        return self.client is not None

    async def complete(
        self,
        system: str,
        messages: List[Dict[str, str]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        model: Optional[str] = None,
    ) -> str:
        """
        Run one chat completion and return the reply text.

        Raises:
            ConfigurationError: no API key configured
            LLMRateLimitError: the provider is rate limiting
        """
        if not self.is_available:
            raise ConfigurationError("LLM_API_KEY is not configured")

        kwargs = {
            "model": model or self.model,
            "messages": [{"role": "system", "content": system}, *messages],
            "max_tokens": max_tokens or self.max_tokens,
        }
        if temperature is not None:
            kwargs["temperature"] = temperature

        try:
            response = await self.client.chat.completions.create(**kwargs)
        except Exception as e:
            if is_rate_limit_error(e):
                logger.warning(f"LLM rate limit hit: {e}")
                raise LLMRateLimitError(str(e)) from e
            raise

        content = response.choices[0].message.content
        return (content or "").strip()

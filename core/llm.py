"""
LLM completion adapter.

One request/response unit: system prompt + user prompt in, generated text and
provider-reported token usage out. The pipeline only depends on the LLMClient
protocol so tests can script responses.
"""

from typing import Optional, Protocol

import structlog
from openai import AsyncOpenAI
from openai.types.chat import ChatCompletion
from pydantic import BaseModel, Field

from config import ProcessingConfig
from core.errors import APIError, ProcessingError

logger = structlog.get_logger(__name__)


class Completion(BaseModel):
    """Generated text plus token usage as reported by the provider"""

    text: str
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)


class LLMClient(Protocol):
    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int
    ) -> Completion:
        ...


class OpenAIChatClient:
    """LLMClient backed by the OpenAI chat completions API"""

    def __init__(self, settings: ProcessingConfig, client: Optional[AsyncOpenAI] = None):
        self.settings = settings
        if client is None:
            if not settings.openai_api_key:
                raise ProcessingError("OpenAI API key not configured")
            client = AsyncOpenAI(api_key=settings.openai_api_key, timeout=settings.api_timeout)
        self.client = client

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int
    ) -> Completion:
        try:
            response: ChatCompletion = await self.client.chat.completions.create(
                model=self.settings.openai_model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt}
                ],
                temperature=temperature,
                max_tokens=max_tokens
            )
        except Exception as e:
            logger.error("Completion request failed",
                        model=self.settings.openai_model,
                        error=str(e))
            if "timeout" in str(e).lower() or "rate limit" in str(e).lower():
                raise APIError(f"API error: {e}") from e
            raise ProcessingError(f"Completion failed: {e}") from e

        text = response.choices[0].message.content if response.choices else None
        if not text:
            raise ProcessingError("API returned empty response")

        usage = response.usage
        completion = Completion(
            text=text,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            total_tokens=usage.total_tokens if usage else 0
        )

        logger.debug("Completion received",
                    model=self.settings.openai_model,
                    input_tokens=completion.input_tokens,
                    output_tokens=completion.output_tokens)
        return completion

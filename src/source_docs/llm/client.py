"""OpenAI-compatible chat completion client for the direct stage path.

Sends one system + user message pair and returns the raw text of the first choice.
Parsing and validation are left to the orchestrator; this module only maps
transport and HTTP failures onto ProviderError.
"""

from typing import Dict, Optional

from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAI
from pydantic import BaseModel

from ..config import Settings, get_settings
from ..errors import ProviderError
from ..log import get_logger

logger = get_logger("llm")


class CompletionConfig(BaseModel):
    api_key: Optional[str] = None
    base_url: str = "https://openrouter.ai/api/v1"
    model: str = "anthropic/claude-sonnet-4"
    temperature: float = 0.3
    max_tokens: int = 4096
    timeout: float = 120.0

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CompletionConfig":
        settings = settings or get_settings()
        return cls(
            api_key=settings.OPENROUTER_API_KEY,
            base_url=settings.LLM_BASE_URL,
            model=settings.LLM_MODEL,
            temperature=settings.LLM_TEMPERATURE,
            max_tokens=settings.LLM_MAX_TOKENS,
            timeout=settings.LLM_TIMEOUT_SECONDS,
        )


class CompletionResult(BaseModel):
    content: str
    model: str
    usage: Dict[str, int] = {}


class CompletionClient:
    def __init__(self, config: Optional[CompletionConfig] = None, client: Optional[OpenAI] = None):
        self.config = config or CompletionConfig.from_settings()
        self._client = client

    @property
    def client(self) -> OpenAI:
        if not self.config.api_key:
            raise ProviderError("No API key configured; set OPENROUTER_API_KEY")
        if self._client is None:
            self._client = OpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                max_retries=0,
            )
        return self._client

    def complete(self, system: str, user: str) -> CompletionResult:
        client = self.client
        logger.info(f"Requesting completion from {self.config.model} ({len(system) + len(user)} chars)")
        try:
            response = client.chat.completions.create(
                model=self.config.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
            )
        except APIStatusError as e:
            body = e.response.text if e.response is not None else None
            raise ProviderError("Completion endpoint returned an error", status_code=e.status_code, body=body) from e
        except APITimeoutError as e:
            raise ProviderError(f"Completion request timed out after {self.config.timeout:.0f}s") from e
        except APIConnectionError as e:
            raise ProviderError(f"Completion endpoint unreachable: {e}") from e

        if not response.choices:
            raise ProviderError("Completion response contained no choices")
        content = response.choices[0].message.content or ""

        usage = {}
        if response.usage is not None:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens or 0,
                "completion_tokens": response.usage.completion_tokens or 0,
                "total_tokens": response.usage.total_tokens or 0,
            }
        logger.info(f"Completion received: {len(content)} chars, usage={usage}")
        return CompletionResult(content=content, model=response.model or self.config.model, usage=usage)

"""
Model adapter for the orchestration core.

Wraps an AsyncOpenAI client (any OpenAI-compatible endpoint, OpenRouter by
default) over a pooled httpx client and exposes it as the plain
`async (prompt, context) -> str` callable the core consumes. Provider
failures are mapped onto the core's error types so the queue can tell
rate limits from transient faults.
"""

import logging

import httpx
import openai
from openai import AsyncOpenAI

from .config import LLMConfig
from .errors import RateLimitError, TransientError
from .utils import count_tokens

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You analyze code changes in pull requests. "
    "Answer with a single JSON value matching the requested shape and nothing else."
)


class LLMClient:
    """Callable model endpoint; one instance per run."""

    def __init__(self, config: LLMConfig, http_client: httpx.AsyncClient | None = None):
        self.config = config
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.request_timeout),
            limits=httpx.Limits(
                max_connections=config.max_connections,
                max_keepalive_connections=max(1, config.max_connections // 2),
            ),
        )
        self.client = AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.api_base_url,
            http_client=self._http_client,
            max_retries=0,  # retries belong to the request queue
            default_headers={"X-Title": "pr-themes"},
        )
        self.call_count = 0
        self.prompt_tokens = 0
        self.completion_tokens = 0

    async def __call__(self, prompt: str, context: str = "general") -> str:
        self.call_count += 1
        try:
            response = await self.client.chat.completions.create(
                model=self.config.model,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
            )
        except openai.RateLimitError as e:
            raise RateLimitError(f"[{context}] rate limited: {e}") from e
        except openai.APIStatusError as e:
            if e.status_code == 429:
                raise RateLimitError(f"[{context}] rate limited: {e}") from e
            if e.status_code >= 500:
                raise TransientError(f"[{context}] server error {e.status_code}: {e}") from e
            raise
        except (openai.APIConnectionError, openai.APITimeoutError) as e:
            raise TransientError(f"[{context}] connection error: {e}") from e

        text = response.choices[0].message.content if response.choices else ""
        text = text or ""
        if response.usage is not None:
            self.prompt_tokens += response.usage.prompt_tokens or 0
            self.completion_tokens += response.usage.completion_tokens or 0
        else:
            self.prompt_tokens += count_tokens(prompt)
            self.completion_tokens += count_tokens(text)
        logger.debug(f"[LLM] {context}: {len(prompt)} chars in, {len(text)} chars out")
        return text

    async def close(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._owns_http_client:
            await self._http_client.aclose()

    def get_stats(self) -> dict[str, int]:
        return {
            "calls": self.call_count,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
        }


def create_call_model(config: LLMConfig, http_client: httpx.AsyncClient | None = None) -> LLMClient:
    """Factory for the model callable; close() it when the run is over."""
    problems = config.validate()
    if problems:
        raise ValueError(f"Invalid LLM configuration: {'; '.join(problems)}")
    return LLMClient(config, http_client)

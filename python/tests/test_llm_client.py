"""
Tests for the OpenAI-compatible model adapter.

Tests cover:
- Successful completions and usage accounting
- Mapping of provider failures onto queue error types
- Configuration checks in create_call_model()
"""

import httpx
import openai
import pytest

from pr_themes.config import LLMConfig
from pr_themes.errors import RateLimitError, TransientError
from pr_themes.llm_client import LLMClient, create_call_model


CONFIG = LLMConfig(api_key="test-key", api_base_url="https://llm.test/api/v1", model="test/model")


def completion(content: str) -> dict:
    return {
        "id": "cmpl-1",
        "object": "chat.completion",
        "created": 0,
        "model": "test/model",
        "choices": [
            {"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}
        ],
        "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
    }


def client_for(handler) -> LLMClient:
    return create_call_model(CONFIG, httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestLLMClient:
    """Tests for LLMClient.__call__()."""

    @pytest.mark.asyncio
    async def test_returns_message_text(self):
        """Test the assistant message is returned and usage is counted."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=completion('{"ok": true}'))

        client = client_for(handler)

        text = await client("Compare these themes", context="similarity-analysis")

        assert text == '{"ok": true}'
        assert client.get_stats() == {"calls": 1, "prompt_tokens": 12, "completion_tokens": 3}
        assert seen[0].url.path == "/api/v1/chat/completions"
        assert seen[0].headers["authorization"] == "Bearer test-key"

    @pytest.mark.asyncio
    async def test_rate_limit_is_mapped(self):
        """Test HTTP 429 becomes RateLimitError."""
        client = client_for(lambda request: httpx.Response(429, json={"error": {"message": "slow down"}}))

        with pytest.raises(RateLimitError):
            await client("prompt")

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        """Test HTTP 5xx becomes TransientError."""
        client = client_for(lambda request: httpx.Response(503, json={"error": {"message": "unavailable"}}))

        with pytest.raises(TransientError) as exc_info:
            await client("prompt", context="theme-expansion")

        assert not isinstance(exc_info.value, RateLimitError)
        assert "theme-expansion" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        """Test network failures become TransientError."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientError):
            await client_for(handler)("prompt")

    @pytest.mark.asyncio
    async def test_client_errors_propagate(self):
        """Test a 4xx other than 429 is not retried as transient."""
        client = client_for(lambda request: httpx.Response(400, json={"error": {"message": "bad request"}}))

        with pytest.raises(openai.BadRequestError):
            await client("prompt")


class TestCreateCallModel:
    """Tests for the factory."""

    def test_missing_api_key(self):
        """Test an empty API key is rejected before any request."""
        with pytest.raises(ValueError, match="api_key"):
            create_call_model(LLMConfig())

    @pytest.mark.asyncio
    async def test_injected_http_client_is_not_closed(self):
        """Test close() leaves a caller-owned HTTP client open."""
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        client = create_call_model(CONFIG, http_client)

        await client.close()

        assert not http_client.is_closed
        await http_client.aclose()

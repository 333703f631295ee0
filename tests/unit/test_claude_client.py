"""Tests for the model client's deadline and fallback handling."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from anthropic import APIConnectionError, BadRequestError

from callcatcher.config import settings
from callcatcher.infra.claude import ClaudeClient, ClaudeClientError

REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def make_message(text: str) -> SimpleNamespace:
    return SimpleNamespace(
        content=[SimpleNamespace(text=text)],
        usage=SimpleNamespace(input_tokens=10, output_tokens=5),
    )


def bad_request() -> BadRequestError:
    return BadRequestError("bad", response=httpx.Response(400, request=REQUEST), body=None)


class TestClaudeClient:
    """Test model ordering and retries."""

    @pytest.fixture
    def client(self):
        client = ClaudeClient(api_key="test-key", deadline_seconds=2.0)
        client._client = SimpleNamespace(messages=SimpleNamespace(create=AsyncMock()))
        return client

    def test_requires_api_key(self):
        with patch.object(settings, "anthropic_api_key", None):
            with pytest.raises(ValueError):
                ClaudeClient()

    @pytest.mark.asyncio
    async def test_primary_model_answers(self, client):
        client._client.messages.create.return_value = make_message('{"intent": "goodbye"}')

        response = await client.generate(prompt="bye", system_prompt="Be brief")

        assert response.content == '{"intent": "goodbye"}'
        assert response.model == settings.understanding_model
        kwargs = client._client.messages.create.call_args.kwargs
        assert kwargs["system"] == "Be brief"
        assert kwargs["messages"] == [{"role": "user", "content": "bye"}]

    @pytest.mark.asyncio
    async def test_client_error_moves_to_fallback(self, client):
        client._client.messages.create.side_effect = [bad_request(), make_message("ok")]

        response = await client.generate(prompt="hello")

        assert response.model == settings.understanding_fallback_model
        assert client._client.messages.create.await_count == 2

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, client):
        client._client.messages.create.side_effect = [
            APIConnectionError(request=REQUEST),
            make_message("ok"),
        ]

        with patch("callcatcher.infra.claude.asyncio.sleep", AsyncMock()):
            response = await client.generate(prompt="hello")

        assert response.model == settings.understanding_model
        assert response.content == "ok"

    @pytest.mark.asyncio
    async def test_every_model_failing_raises(self, client):
        client._client.messages.create.side_effect = bad_request()

        with pytest.raises(ClaudeClientError):
            await client.generate(prompt="hello")

    @pytest.mark.asyncio
    async def test_empty_answer_moves_to_fallback(self, client):
        client._client.messages.create.side_effect = [
            SimpleNamespace(content=[], usage=SimpleNamespace(input_tokens=10, output_tokens=0)),
            make_message('{"intent": "goodbye"}'),
        ]

        response = await client.generate(prompt="bye")

        assert response.model == settings.understanding_fallback_model

    @pytest.mark.asyncio
    async def test_empty_answers_everywhere_raise(self, client):
        client._client.messages.create.return_value = SimpleNamespace(
            content=[], usage=SimpleNamespace(input_tokens=10, output_tokens=0)
        )

        with pytest.raises(ClaudeClientError):
            await client.generate(prompt="bye")

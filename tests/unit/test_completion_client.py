from unittest.mock import MagicMock

import httpx
import pytest
from openai import APIConnectionError, APIStatusError

from source_docs.errors import ProviderError
from source_docs.llm.client import CompletionClient, CompletionConfig

REQUEST = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")


def make_response(content="[]"):
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    response.model = "test/model"
    response.usage.prompt_tokens = 10
    response.usage.completion_tokens = 5
    response.usage.total_tokens = 15
    return response


@pytest.fixture
def config():
    return CompletionConfig(api_key="sk-test", model="test/model", temperature=0.3, max_tokens=100)


def test_complete_sends_system_and_user_messages(config):
    """
    WHY: The completion endpoint contract is {model, messages, temperature, max_tokens}.
    HOW: Inject a mocked OpenAI client and inspect the create() call.
    EXPECTED: Both messages in order, configured parameters, and the first choice's text returned.
    """
    openai_client = MagicMock()
    openai_client.chat.completions.create.return_value = make_response('{"ok": true}')

    result = CompletionClient(config, client=openai_client).complete("system text", "user text")

    kwargs = openai_client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "test/model"
    assert kwargs["temperature"] == 0.3
    assert kwargs["max_tokens"] == 100
    assert kwargs["messages"] == [
        {"role": "system", "content": "system text"},
        {"role": "user", "content": "user text"},
    ]
    assert result.content == '{"ok": true}'
    assert result.usage == {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}


def test_missing_api_key_fails_before_request():
    openai_client = MagicMock()
    client = CompletionClient(CompletionConfig(api_key=None), client=openai_client)
    with pytest.raises(ProviderError, match="No API key"):
        client.complete("s", "u")
    openai_client.chat.completions.create.assert_not_called()


def test_http_error_becomes_provider_error(config):
    """
    WHY: Provider failures need different retry guidance from bad responses.
    HOW: Raise an APIStatusError carrying a 429 response body.
    EXPECTED: ProviderError with the status code and raw body.
    """
    response = httpx.Response(429, request=REQUEST, text='{"error": "rate limited"}')
    openai_client = MagicMock()
    openai_client.chat.completions.create.side_effect = APIStatusError("rate limited", response=response, body=None)

    with pytest.raises(ProviderError) as exc_info:
        CompletionClient(config, client=openai_client).complete("s", "u")

    error = exc_info.value
    assert error.kind == "provider"
    assert error.status_code == 429
    assert error.body == '{"error": "rate limited"}'
    assert "(HTTP 429)" in error.message


def test_connection_error_becomes_provider_error(config):
    openai_client = MagicMock()
    openai_client.chat.completions.create.side_effect = APIConnectionError(request=REQUEST)

    with pytest.raises(ProviderError) as exc_info:
        CompletionClient(config, client=openai_client).complete("s", "u")
    assert exc_info.value.status_code is None


def test_config_from_settings():
    from source_docs.config import Settings

    settings = Settings(OPENROUTER_API_KEY="sk-x", LLM_MODEL="m", LLM_TIMEOUT_SECONDS=5)
    config = CompletionConfig.from_settings(settings)
    assert (config.api_key, config.model, config.timeout) == ("sk-x", "m", 5.0)

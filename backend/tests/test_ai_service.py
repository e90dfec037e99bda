"""
Tests for the AI service: provider parsing, key handling, and JSON extraction.
Vendor clients are never called; completions are patched.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from app.exceptions import AIResponseFormatError, ConfigurationError
from app.services import ai_service
from app.services.ai_service import AIService, _parse_model_id, parse_json_response, strip_code_fences


@pytest.fixture
def anyio_backend():
    return "asyncio"


def test_strip_code_fences():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('```\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('  {"a": 1}  ') == '{"a": 1}'
    assert strip_code_fences(None) == ""


def test_parse_json_response():
    assert parse_json_response('```json\n{"summary": "ok"}\n```') == {"summary": "ok"}

    with pytest.raises(AIResponseFormatError, match="not valid JSON"):
        parse_json_response("Here is my analysis: scale campaign 1")
    with pytest.raises(AIResponseFormatError, match="not a JSON object"):
        parse_json_response("[1, 2, 3]")


def test_parse_model_id():
    assert _parse_model_id("anthropic:claude-sonnet-4-20250514") == ("anthropic", "claude-sonnet-4-20250514")
    assert _parse_model_id("OpenAI: gpt-4o") == ("openai", "gpt-4o")
    assert _parse_model_id("gpt-4o") == ("openai", "gpt-4o")
    with patch.object(ai_service.settings, "llm_model", "openai:gpt-4o-mini"):
        assert _parse_model_id(None) == ("openai", "gpt-4o-mini")


def test_missing_key_is_a_configuration_error():
    with patch.object(ai_service.settings, "openai_api_key", None), \
            patch.object(ai_service.settings, "anthropic_api_key", None):
        with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
            AIService(model_id="openai:gpt-4o")
        with pytest.raises(ConfigurationError, match="ANTHROPIC_API_KEY"):
            AIService(model_id="anthropic:claude-sonnet-4-20250514")


def test_unknown_provider():
    with pytest.raises(ConfigurationError, match="Unknown AI provider: mistral"):
        AIService(model_id="mistral:large", openai_api_key="sk-test")


@pytest.mark.anyio
async def test_generate_json_sends_schema_and_parses_reply():
    service = AIService(model_id="openai:gpt-4o", openai_api_key="sk-test")
    schema = {"type": "object", "required": ["summary"]}

    with patch.object(service, "_completion", AsyncMock(return_value='{"summary": "Hold steady"}')) as completion:
        result = await service.generate_json("Analyse these campaigns", schema)

    assert result == {"summary": "Hold steady"}
    messages = completion.call_args.args[0]
    assert messages[0]["content"] == ai_service.SYSTEM_PROMPT
    assert '"required":["summary"]' in messages[1]["content"]
    assert messages[2] == {"role": "user", "content": "Analyse these campaigns"}
    assert completion.call_args.kwargs["json_response"] is True


@pytest.mark.anyio
async def test_generate_json_rejects_prose():
    service = AIService(model_id="openai:gpt-4o", openai_api_key="sk-test")
    with patch.object(service, "_completion", AsyncMock(return_value="I recommend scaling campaign 1.")):
        with pytest.raises(AIResponseFormatError):
            await service.generate_json("prompt", {})


@pytest.mark.anyio
async def test_anthropic_system_messages_are_merged():
    service = AIService(model_id="anthropic:claude-sonnet-4-20250514", anthropic_api_key="sk-ant-test")
    reply = SimpleNamespace(content=[SimpleNamespace(type="text", text='{"summary": "ok"}')])
    service._anthropic_client = SimpleNamespace(messages=SimpleNamespace(create=AsyncMock(return_value=reply)))

    result = await service.generate_json("prompt", {"type": "object"})

    assert result == {"summary": "ok"}
    kwargs = service._anthropic_client.messages.create.call_args.kwargs
    assert kwargs["system"].startswith(ai_service.SYSTEM_PROMPT)
    assert "JSON schema for your response" in kwargs["system"]
    assert kwargs["messages"] == [{"role": "user", "content": "prompt"}]

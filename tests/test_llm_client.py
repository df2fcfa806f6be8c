"""Tests for the OpenRouter client."""

import json

import httpx
import pytest

from pbi_analyzer.services.llm_client import LLMClient


def _client(handler):
    return LLMClient(transport=httpx.MockTransport(handler))


def test_chat_turn_sends_tools_and_security_warning():
    sent = []

    def handler(request):
        sent.append(json.loads(request.content))
        message = {"role": "assistant", "content": None, "tool_calls": [{"id": "c1", "type": "function"}]}
        return httpx.Response(200, json={"choices": [{"message": message}]})

    tools = [{"type": "function", "function": {"name": "column_operations", "parameters": {}}}]
    messages = [{"role": "system", "content": "Fix things."}, {"role": "user", "content": "Go"}]

    message = _client(handler).chat_turn("openai/gpt-4.1", messages, tools=tools)

    assert message["tool_calls"][0]["id"] == "c1"
    payload = sent[0]
    assert payload["tools"] == tools
    assert payload["tool_choice"] == "auto"
    assert payload["messages"][0]["content"].startswith("SECURITY WARNINGS:")
    assert payload["messages"][0]["content"].endswith("Fix things.")
    assert messages[0]["content"] == "Fix things."


def test_chat_completion_returns_content():
    def handler(request):
        return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": "EVALUATE Sales"}}]})

    assert _client(handler).chat_completion("openai/gpt-4.1", [{"role": "user", "content": "q"}]) == "EVALUATE Sales"


def test_model_whitelist():
    with pytest.raises(ValueError):
        _client(lambda request: httpx.Response(200, json={})).chat_turn("some/other-model", [])


def test_client_error_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(401, text="bad key")

    with pytest.raises(ValueError):
        _client(handler).chat_turn("openai/gpt-4.1", [{"role": "user", "content": "q"}])
    assert len(calls) == 1


def test_missing_choices():
    with pytest.raises(ValueError):
        _client(lambda request: httpx.Response(200, json={"choices": []})).chat_turn(
            "openai/gpt-4.1", [{"role": "user", "content": "q"}]
        )

from types import SimpleNamespace

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from concierge.llm_client import (
    ChatLlmClient,
    MaxRetryErrorsException,
    _is_rate_limited,
    _is_timeout_error,
    call_with_retries_sync,
    is_openai_model,
    parse_model_name,
)


def test_parse_model_name_presets_and_tokens():
    assert parse_model_name("gpt-5.1") == ("gpt-5.1", {})
    assert parse_model_name("gpt-5.1_fast") == (
        "gpt-5.1",
        {"service_tier": "default", "text": {"verbosity": "low"}, "reasoning": {"effort": "none"}},
    )
    assert parse_model_name("gpt-5_high_flex") == ("gpt-5", {"service_tier": "flex", "text": {"verbosity": "high"}})


def test_parse_model_name_rejects_bad_input():
    with pytest.raises(ValueError):
        parse_model_name("")
    with pytest.raises(ValueError):
        parse_model_name("gpt-5_turbo")


def test_provider_detection():
    assert is_openai_model("gpt-5.1_fast")
    assert is_openai_model("o3-mini")
    assert not is_openai_model("gemini-2.5-flash-lite")


def test_retry_classification():
    assert _is_rate_limited(RuntimeError("429 Too Many Requests"))
    assert not _is_rate_limited(RuntimeError("500 server error"))
    assert _is_timeout_error(TimeoutError())
    assert _is_timeout_error(RuntimeError("Request timed out"))


def test_call_with_retries_gives_up_after_all_attempts():
    attempts = []
    logs = []

    def failing():
        attempts.append(1)
        raise ValueError("bad payload")

    with pytest.raises(MaxRetryErrorsException) as exc:
        call_with_retries_sync(failing, retries=3, log=logs.append)

    assert len(attempts) == 3
    assert len(logs) == 3
    assert isinstance(exc.value.__cause__, ValueError)


def test_call_with_retries_returns_first_success():
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 2:
            raise ValueError("transient")
        return "ok"

    assert call_with_retries_sync(flaky, retries=3) == "ok"
    assert len(attempts) == 2


class FakeResponses:
    def __init__(self):
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        return SimpleNamespace(
            output_text="  Hi there!  ",
            usage=SimpleNamespace(input_tokens=10, output_tokens=4, total_tokens=14),
        )


def test_openai_chat_client_maps_roles_and_tracks_usage(monkeypatch, caplog):
    caplog.set_level("INFO", logger="concierge")
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    client = ChatLlmClient("gpt-5.1_fast", vertex_project="p", vertex_region="r")
    responses = FakeResponses()
    client._client = SimpleNamespace(responses=responses)

    messages = [SystemMessage(content="rules"), HumanMessage(content="hi"), AIMessage(content="hello")]
    assert client.invoke(messages) == "Hi there!"
    assert client.invoke(messages) == "Hi there!"

    call = responses.calls[0]
    assert call["model"] == "gpt-5.1"
    assert [m["role"] for m in call["input"]] == ["developer", "user", "assistant"]
    assert call["reasoning"] == {"effort": "none"}
    assert client.last_usage == {
        "prompt_token_count": 20,
        "candidates_token_count": 8,
        "total_token_count": 28,
    }
    usage_lines = [r.getMessage() for r in caplog.records if "[CHAT-LLM-USAGE]" in r.getMessage()]
    assert len(usage_lines) == 2
    assert usage_lines[-1].endswith("running_total=28")

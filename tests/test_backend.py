"""Tests for provider routing, wire conversion and the response cache."""

from types import SimpleNamespace
from unittest.mock import patch

import litellm
import pytest

from ponder.backend import (
    ZHIPU_BASE_URL,
    ModelBackend,
    ModelResponse,
    ResponseCache,
    to_wire,
)
from ponder.models import Message, ToolCall
from ponder.report import ModelBackendError, ModelNotConfiguredError

_KEY_VARS = ("ZHIPU_API_KEY", "OPENAI_API_KEY", "ANTHROPIC_API_KEY")


@pytest.fixture(autouse=True)
def _no_keys(monkeypatch):
    for var in _KEY_VARS:
        monkeypatch.delenv(var, raising=False)


def _response(content="ok", tool_calls=None):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    choice = SimpleNamespace(message=message, finish_reason="stop")
    usage = SimpleNamespace(prompt_tokens=3, completion_tokens=2, total_tokens=5)
    return SimpleNamespace(choices=[choice], usage=usage)


def _raw_tool_call(name, arguments, call_id="call_1"):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


# ---------------------------------------------------------------------------
# Provider resolution and routing
# ---------------------------------------------------------------------------


class TestResolve:
    def test_unknown_provider(self):
        with pytest.raises(ModelBackendError, match="unknown provider"):
            ModelBackend(provider="acme")

    def test_not_configured(self):
        backend = ModelBackend()
        assert backend.is_configured() is False
        with pytest.raises(ModelNotConfiguredError, match="ZHIPU_API_KEY"):
            backend.resolve()

    def test_explicit_key(self):
        backend = ModelBackend(provider="openai", api_key="sk-1")
        assert backend.resolve() == ("openai", "gpt-4o-mini", "sk-1")

    def test_env_key(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "ak")
        backend = ModelBackend(provider="anthropic", model="claude-x")
        assert backend.resolve() == ("anthropic", "claude-x", "ak")

    def test_falls_back_to_configured_provider(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        backend = ModelBackend(provider="zhipu")
        assert backend.resolve() == ("openai", "gpt-4o-mini", "sk-env")

    def test_lmstudio_needs_no_key(self):
        assert ModelBackend(provider="lmstudio").is_configured()


class TestRouting:
    def test_zhipu(self):
        with patch("litellm.completion", return_value=_response()) as completion:
            ModelBackend(provider="zhipu", api_key="zk").send([Message("user", "hi")])
        kwargs = completion.call_args.kwargs
        assert kwargs["model"] == "openai/glm-4"
        assert kwargs["api_base"] == ZHIPU_BASE_URL
        assert kwargs["api_key"] == "zk"
        assert kwargs["max_tokens"] == 4000
        assert kwargs["temperature"] == 0.7
        assert "tools" not in kwargs

    def test_lmstudio(self):
        with patch("litellm.completion", return_value=_response()) as completion:
            ModelBackend(provider="lmstudio", model="qwen", base_url="http://localhost:9999").send(
                [Message("user", "hi")]
            )
        kwargs = completion.call_args.kwargs
        assert kwargs["model"] == "openai/qwen"
        assert kwargs["api_base"] == "http://localhost:9999/v1"
        assert kwargs["api_key"] == "lm-studio"

    def test_openai_with_tools(self):
        tools = [{"type": "function", "function": {"name": "Read", "parameters": {}}}]
        with patch("litellm.completion", return_value=_response()) as completion:
            ModelBackend(provider="openai", api_key="sk", temperature=None).send(
                [Message("user", "hi")], tools
            )
        kwargs = completion.call_args.kwargs
        assert kwargs["model"] == "openai/gpt-4o-mini"
        assert kwargs["tools"] == tools
        assert kwargs["tool_choice"] == "auto"
        assert "temperature" not in kwargs
        assert "api_base" not in kwargs


class TestSend:
    def test_decodes_response(self):
        raw = _response(
            content=None,
            tool_calls=[
                _raw_tool_call("Read", '{"file_path": "a.py"}'),
                _raw_tool_call("Glob", "{not json", "call_2"),
            ],
        )
        with patch("litellm.completion", return_value=raw):
            response = ModelBackend(api_key="k").send([Message("user", "hi")])
        assert response.content == ""
        assert response.tool_calls == [ToolCall("Read", {"file_path": "a.py"}, id="call_1")]
        assert response.usage == {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}
        assert response.finish_reason == "stop"

    def test_failure_wrapped(self):
        with patch("litellm.completion", side_effect=ConnectionError("refused")):
            with pytest.raises(ModelBackendError, match="LLM call failed: refused"):
                ModelBackend(api_key="k").send([Message("user", "hi")])

    def test_auth_failure_wrapped(self):
        error = litellm.AuthenticationError(
            message="bad key", llm_provider="openai", model="gpt-4o-mini"
        )
        with patch("litellm.completion", side_effect=error):
            with pytest.raises(ModelBackendError, match="authentication failed"):
                ModelBackend(provider="openai", api_key="k").send([Message("user", "hi")])

    def test_not_configured_raised_before_call(self):
        with patch("litellm.completion") as completion:
            with pytest.raises(ModelNotConfiguredError):
                ModelBackend().send([Message("user", "hi")])
        completion.assert_not_called()


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestResponseCache:
    def test_ttl(self):
        clock = FakeClock()
        cache = ResponseCache(ttl=10, clock=clock)
        cache.put("k", ModelResponse("v"))
        clock.now = 10
        assert cache.get("k").content == "v"
        clock.now = 10.5
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_oldest_evicted(self):
        cache = ResponseCache(max_size=2, clock=FakeClock())
        for key in ("a", "b", "c"):
            cache.put(key, ModelResponse(key))
        assert cache.get("a") is None
        assert cache.get("b").content == "b"
        assert len(cache) == 2

    def test_key_covers_whole_conversation(self):
        prefix = "x" * 5000
        one = ResponseCache.key([{"role": "user", "content": prefix + "1"}], None)
        two = ResponseCache.key([{"role": "user", "content": prefix + "2"}], None)
        assert one != two

    def test_key_includes_tools(self):
        wire = [{"role": "user", "content": "hi"}]
        assert ResponseCache.key(wire, None) != ResponseCache.key(wire, [{"name": "Read"}])

    def test_send_cached_reuses_response(self):
        backend = ModelBackend(api_key="k")
        with patch("litellm.completion", return_value=_response("first")) as completion:
            one = backend.send_cached([Message("user", "hi")])
            two = backend.send_cached([Message("user", "hi")])
        assert one.content == two.content == "first"
        assert completion.call_count == 1

    def test_tool_call_responses_not_cached(self):
        backend = ModelBackend(api_key="k")
        raw = _response("", [_raw_tool_call("Read", '{"file_path": "a"}')])
        with patch("litellm.completion", return_value=raw) as completion:
            backend.send_cached([Message("user", "hi")])
            backend.send_cached([Message("user", "hi")])
        assert completion.call_count == 2
        assert len(backend.cache) == 0

    def test_backends_do_not_share_cache(self):
        one, two = ModelBackend(api_key="k"), ModelBackend(api_key="k")
        with patch("litellm.completion", return_value=_response("x")):
            one.send_cached([Message("user", "hi")])
        assert len(one.cache) == 1
        assert len(two.cache) == 0


# ---------------------------------------------------------------------------
# Wire conversion
# ---------------------------------------------------------------------------


class TestToWire:
    def _conversation(self):
        call = ToolCall("Read", {"file_path": "a.py"}, id="c1")
        return [
            Message("system", "sys"),
            Message("user", "read a.py"),
            Message("assistant", "", tool_calls=[call]),
            Message("tool", "print(1)", tool_call_id="c1", name="Read"),
        ]

    def test_native(self):
        wire = to_wire(self._conversation(), native_tools=True)
        assert wire[2]["tool_calls"][0]["id"] == "c1"
        assert wire[2]["tool_calls"][0]["function"] == {
            "name": "Read",
            "arguments": '{"file_path": "a.py"}',
        }
        assert wire[3] == {"role": "tool", "tool_call_id": "c1", "content": "print(1)", "name": "Read"}

    def test_text_protocol(self):
        wire = to_wire(self._conversation(), native_tools=False)
        assert wire[2] == {"role": "assistant", "content": 'Action: Read(file_path="a.py")'}
        assert wire[3] == {"role": "user", "content": "Observation: print(1)"}

    def test_assistant_text_kept(self):
        call = ToolCall("Glob", {"pattern": "*"}, id="c2")
        msg = Message("assistant", 'Thought: t\nAction: Glob(pattern="*")', tool_calls=[call])
        assert to_wire([msg], native_tools=False)[0]["content"] == msg.content

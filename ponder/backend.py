"""Model backend: provider resolution, wire conversion and the response cache."""

import hashlib
import json
import logging
import os
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field

from .models import Message, ToolCall
from .parser import render_action
from .report import ModelBackendError, ModelNotConfiguredError

logger = logging.getLogger(__name__)

PROVIDERS = ("zhipu", "openai", "anthropic", "lmstudio")

API_KEY_ENV = {
    "zhipu": "ZHIPU_API_KEY",
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}

DEFAULT_MODELS = {
    "zhipu": "glm-4",
    "openai": "gpt-4o-mini",
    "anthropic": "claude-3-5-haiku-latest",
    "lmstudio": "local-model",
}

ZHIPU_BASE_URL = "https://open.bigmodel.cn/api/paas/v4"
LMSTUDIO_BASE_URL = "http://127.0.0.1:1234"

# Order in which other providers are tried when the configured one has no key.
_FALLBACK_ORDER = ("zhipu", "openai", "anthropic")


@dataclass
class ModelResponse:
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: dict = field(default_factory=dict)
    finish_reason: str | None = None


class ResponseCache:
    """Best-effort TTL cache of model responses, oldest entries evicted first."""

    def __init__(self, ttl: float = 300, max_size: int = 100, clock=time.monotonic):
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, ModelResponse]] = OrderedDict()

    @staticmethod
    def key(wire_messages: list[dict], tools: list[dict] | None) -> str:
        rendered = json.dumps(
            {"messages": wire_messages, "tools": tools}, sort_keys=True, default=str
        )
        return hashlib.sha256(rendered.encode("utf-8")).hexdigest()

    def get(self, key: str) -> ModelResponse | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, response = entry
        if self._clock() - stored_at > self.ttl:
            del self._entries[key]
            return None
        return response

    def put(self, key: str, response: ModelResponse) -> None:
        self._entries[key] = (self._clock(), response)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def _tool_call_to_wire(call: ToolCall) -> dict:
    return {
        "id": call.id or f"call_{uuid.uuid4().hex[:12]}",
        "type": "function",
        "function": {
            "name": call.tool,
            "arguments": json.dumps(call.parameters, ensure_ascii=False),
        },
    }


def to_wire(conversation: list[Message], native_tools: bool) -> list[dict]:
    """Convert messages to OpenAI-style dicts.

    With native tools, tool calls and tool results keep their structure.
    Without them, tool results become user ``Observation:`` messages and
    assistant tool calls are written out as text.
    """
    wire: list[dict] = []
    for msg in conversation:
        if msg.role == "tool":
            if native_tools and msg.tool_call_id:
                entry = {
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id,
                    "content": msg.content,
                }
                if msg.name:
                    entry["name"] = msg.name
                wire.append(entry)
            else:
                wire.append({"role": "user", "content": f"Observation: {msg.content}"})
            continue

        if msg.role == "assistant" and msg.tool_calls:
            if native_tools:
                wire.append(
                    {
                        "role": "assistant",
                        "content": msg.content or None,
                        "tool_calls": [_tool_call_to_wire(c) for c in msg.tool_calls],
                    }
                )
            else:
                text = msg.content
                if not text:
                    text = "\n".join(
                        f"Action: {render_action(c.tool, c.parameters)}"
                        for c in msg.tool_calls
                    )
                wire.append({"role": "assistant", "content": text})
            continue

        wire.append({"role": msg.role, "content": msg.content})
    return wire


def _usage_dict(usage) -> dict:
    if usage is None:
        return {}
    out = {}
    for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
        value = getattr(usage, key, None)
        if value is None and isinstance(usage, dict):
            value = usage.get(key)
        if value is not None:
            out[key] = value
    return out


def _decode_tool_calls(raw_calls) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for tc in raw_calls or []:
        fn = getattr(tc, "function", None)
        name = getattr(fn, "name", None)
        arguments = getattr(fn, "arguments", None) or "{}"
        try:
            params = json.loads(arguments) if isinstance(arguments, str) else dict(arguments)
        except (json.JSONDecodeError, TypeError, ValueError) as e:
            logger.error("skipping tool call %s with undecodable arguments: %s", name, e)
            continue
        if not name or not isinstance(params, dict):
            logger.error("skipping malformed tool call %r", name)
            continue
        calls.append(ToolCall(tool=name, parameters=params, id=getattr(tc, "id", None)))
    return calls


class ModelBackend:
    """Chat-completion client over litellm for the supported providers."""

    def __init__(
        self,
        *,
        provider: str = "zhipu",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_output_tokens: int = 4000,
        temperature: float | None = 0.7,
        cache_ttl: float = 300,
        cache_size: int = 100,
    ):
        if provider not in PROVIDERS:
            raise ModelBackendError(
                f"unknown provider {provider!r}, expected one of: {', '.join(PROVIDERS)}"
            )
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.cache = ResponseCache(ttl=cache_ttl, max_size=cache_size)

    # -- provider resolution --

    def _key_for(self, provider: str) -> str | None:
        if provider == self.provider and self.api_key:
            return self.api_key
        env = API_KEY_ENV.get(provider)
        return os.environ.get(env) if env else None

    def resolve(self) -> tuple[str, str, str | None]:
        """Return (provider, model, api_key) for the next call.

        Falls back to any provider with a key when the configured one has
        none; raises ModelNotConfiguredError when no provider is usable.
        """
        if self.provider == "lmstudio":
            return "lmstudio", self.model or DEFAULT_MODELS["lmstudio"], None
        key = self._key_for(self.provider)
        if key:
            return self.provider, self.model or DEFAULT_MODELS[self.provider], key
        for provider in _FALLBACK_ORDER:
            key = self._key_for(provider)
            if key:
                logger.info(
                    "provider %s has no API key, falling back to %s", self.provider, provider
                )
                return provider, DEFAULT_MODELS[provider], key
        raise ModelNotConfiguredError(
            f"no API key configured for {self.provider} "
            f"(set {API_KEY_ENV[self.provider]} or pass --api-key)"
        )

    def is_configured(self) -> bool:
        try:
            self.resolve()
        except ModelNotConfiguredError:
            return False
        return True

    @property
    def model_name(self) -> str:
        return self.model or DEFAULT_MODELS[self.provider]

    def _completion_kwargs(self, provider: str, model: str, api_key: str | None) -> dict:
        if provider == "zhipu":
            return {
                "model": f"openai/{model}",
                "api_base": self.base_url or ZHIPU_BASE_URL,
                "api_key": api_key,
            }
        if provider == "lmstudio":
            return {
                "model": f"openai/{model}",
                "api_base": f"{self.base_url or LMSTUDIO_BASE_URL}/v1",
                "api_key": "lm-studio",
            }
        kwargs = {"model": f"{provider}/{model}", "api_key": api_key}
        if self.base_url:
            kwargs["api_base"] = self.base_url
        return kwargs

    # -- calls --

    def send(
        self, conversation: list[Message], tools: list[dict] | None = None
    ) -> ModelResponse:
        """Send the conversation and return the model's reply.

        Raises ModelNotConfiguredError when no credential is available and
        ModelBackendError for any other failure.
        """
        return self._send(to_wire(conversation, native_tools=bool(tools)), tools)

    def send_cached(
        self, conversation: list[Message], tools: list[dict] | None = None
    ) -> ModelResponse:
        """Like send(), but reuse a recent identical response when possible."""
        wire = to_wire(conversation, native_tools=bool(tools))
        key = ResponseCache.key(wire, tools)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("response cache hit")
            return cached
        response = self._send(wire, tools)
        if not response.tool_calls:
            self.cache.put(key, response)
        return response

    def _send(self, wire: list[dict], tools: list[dict] | None) -> ModelResponse:
        import litellm

        litellm.suppress_debug_info = True

        provider, model, api_key = self.resolve()
        kwargs = self._completion_kwargs(provider, model, api_key)
        kwargs.update(messages=wire, max_tokens=self.max_output_tokens)
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        try:
            response = litellm.completion(**kwargs)
        except litellm.AuthenticationError as e:
            raise ModelBackendError(f"authentication failed for {provider}: {e}") from e
        except Exception as e:
            raise ModelBackendError(f"LLM call failed: {e}") from e

        try:
            choice = response.choices[0]
        except (AttributeError, IndexError) as e:
            raise ModelBackendError(f"LLM returned no choices: {e}") from e
        message = choice.message
        return ModelResponse(
            content=getattr(message, "content", None) or "",
            tool_calls=_decode_tool_calls(getattr(message, "tool_calls", None)),
            usage=_usage_dict(getattr(response, "usage", None)),
            finish_reason=getattr(choice, "finish_reason", None),
        )

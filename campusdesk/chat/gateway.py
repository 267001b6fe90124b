"""
CampusDesk
LLM Gateway — completion service client for the staff assistant.

Provider-agnostic router with:
    - Multi-provider support (Anthropic Claude, OpenAI, local stub)
    - Native tool calling (Anthropic tool use / OpenAI function calling)
    - Auto-retry with exponential backoff
    - Token tracking & cost logging

Every provider speaks the same neutral message format:

    {"role": "system" | "user" | "assistant", "content": str}
    {"role": "assistant", "content": str, "tool_calls": [{"id", "name", "input"}]}
    {"role": "tool", "tool_call_id": str, "content": str}

and returns

    {content, tool_calls[{id, name, input}], prompt_tokens, completion_tokens,
     model, stop_reason}

The gateway is never a process-wide singleton: ``get_gateway()`` builds one
per request from the factory stored on ``app.extensions`` so tests can swap
in a scripted fake.

Usage:
    from campusdesk.chat.gateway import get_gateway
    result = get_gateway().chat(messages, tools=tool_specs, user="tanaka")
"""

import json
import logging
import os
import re
import threading
import time
from abc import ABC, abstractmethod

from flask import current_app, g

from campusdesk.core.exceptions import CompletionServiceUnavailable

logger = logging.getLogger(__name__)

GATEWAY_FACTORY_KEY = "campusdesk.gateway_factory"


# ── Pricing (USD per 1M tokens: input, output) ───────────────────────────────

MODEL_PRICING = {
    "claude-3-5-haiku-20241022": (0.80, 4.00),
    "claude-3-5-sonnet-20241022": (3.00, 15.00),
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.00),
    "local-stub": (0.0, 0.0),
}


def calculate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    in_rate, out_rate = MODEL_PRICING.get(model, (0.0, 0.0))
    return round((prompt_tokens * in_rate + completion_tokens * out_rate) / 1_000_000, 6)


# ── Provider Abstract Base ────────────────────────────────────────────────────

class LLMProvider(ABC):
    """Abstract interface for LLM providers."""

    @abstractmethod
    def chat(self, messages: list, model: str, tools: list | None = None, **kwargs) -> dict:
        """
        Send a chat completion request.

        Args:
            messages: Neutral-format message dicts (see module docstring).
            model: Model identifier string.
            tools: ``[{"name", "description", "input_schema"}]`` offered to the model.
            **kwargs: temperature, max_tokens, etc.

        Returns:
            dict with keys: content, tool_calls, prompt_tokens, completion_tokens,
            model, stop_reason
        """
        ...


# ── Anthropic Provider ────────────────────────────────────────────────────────

class AnthropicProvider(LLMProvider):
    """Claude API (Anthropic) provider with tool use."""

    def __init__(self, timeout: float = 60.0):
        self.api_key = os.getenv("ANTHROPIC_API_KEY", "")
        self.timeout = timeout
        self._client = None

    def _get_client(self):
        if self._client is None:
            try:
                import anthropic
                self._client = anthropic.Anthropic(api_key=self.api_key, timeout=self.timeout)
            except ImportError:
                raise RuntimeError("anthropic package not installed. Run: pip install anthropic")
        return self._client

    @staticmethod
    def _to_wire(messages: list) -> tuple[str, list]:
        system_parts = []
        wire = []
        for m in messages:
            role = m["role"]
            if role == "system":
                system_parts.append(m["content"])
            elif role == "assistant" and m.get("tool_calls"):
                blocks = []
                if m.get("content"):
                    blocks.append({"type": "text", "text": m["content"]})
                for tc in m["tool_calls"]:
                    blocks.append({"type": "tool_use", "id": tc["id"],
                                   "name": tc["name"], "input": tc["input"]})
                wire.append({"role": "assistant", "content": blocks})
            elif role == "tool":
                block = {"type": "tool_result", "tool_use_id": m["tool_call_id"],
                         "content": m["content"]}
                # Consecutive tool results travel in one user turn
                if wire and wire[-1]["role"] == "user" and isinstance(wire[-1]["content"], list):
                    wire[-1]["content"].append(block)
                else:
                    wire.append({"role": "user", "content": [block]})
            else:
                wire.append({"role": role, "content": m["content"]})
        return "\n\n".join(system_parts), wire

    def chat(self, messages: list, model: str = "claude-3-5-haiku-20241022",
             tools: list | None = None, **kwargs) -> dict:
        client = self._get_client()
        system_msg, wire = self._to_wire(messages)

        params = {
            "model": model,
            "messages": wire,
            "max_tokens": kwargs.get("max_tokens", 2048),
            "temperature": kwargs.get("temperature", 0.2),
        }
        if system_msg:
            params["system"] = system_msg
        if tools:
            params["tools"] = tools

        response = client.messages.create(**params)

        text_parts, tool_calls = [], []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append({"id": block.id, "name": block.name, "input": block.input})

        return {
            "content": "".join(text_parts),
            "tool_calls": tool_calls,
            "prompt_tokens": response.usage.input_tokens,
            "completion_tokens": response.usage.output_tokens,
            "model": model,
            "stop_reason": response.stop_reason,
        }


# ── OpenAI Provider ───────────────────────────────────────────────────────────

class OpenAIProvider(LLMProvider):
    """OpenAI GPT provider with function calling."""

    def __init__(self, timeout: float = 60.0):
        self.api_key = os.getenv("OPENAI_API_KEY", "")
        self.timeout = timeout
        self._client = None

    def _get_client(self):
        if self._client is None:
            try:
                import openai
                self._client = openai.OpenAI(api_key=self.api_key, timeout=self.timeout)
            except ImportError:
                raise RuntimeError("openai package not installed. Run: pip install openai")
        return self._client

    @staticmethod
    def _to_wire(messages: list) -> list:
        wire = []
        for m in messages:
            if m["role"] == "assistant" and m.get("tool_calls"):
                wire.append({
                    "role": "assistant",
                    "content": m.get("content") or None,
                    "tool_calls": [
                        {"id": tc["id"], "type": "function",
                         "function": {"name": tc["name"],
                                      "arguments": json.dumps(tc["input"], ensure_ascii=False)}}
                        for tc in m["tool_calls"]
                    ],
                })
            elif m["role"] == "tool":
                wire.append({"role": "tool", "tool_call_id": m["tool_call_id"],
                             "content": m["content"]})
            else:
                wire.append({"role": m["role"], "content": m["content"]})
        return wire

    @staticmethod
    def _parse_arguments(raw):
        # Unparseable arguments are passed through as a string; the codec refuses them.
        try:
            return json.loads(raw or "{}")
        except (json.JSONDecodeError, TypeError):
            return raw

    def chat(self, messages: list, model: str = "gpt-4o-mini",
             tools: list | None = None, **kwargs) -> dict:
        client = self._get_client()
        params = {
            "model": model,
            "messages": self._to_wire(messages),
            "max_tokens": kwargs.get("max_tokens", 2048),
            "temperature": kwargs.get("temperature", 0.2),
        }
        if tools:
            params["tools"] = [
                {"type": "function",
                 "function": {"name": t["name"], "description": t.get("description", ""),
                              "parameters": t["input_schema"]}}
                for t in tools
            ]
        response = client.chat.completions.create(**params)
        choice = response.choices[0]
        tool_calls = [
            {"id": tc.id, "name": tc.function.name,
             "input": self._parse_arguments(tc.function.arguments)}
            for tc in (choice.message.tool_calls or [])
        ]
        return {
            "content": choice.message.content or "",
            "tool_calls": tool_calls,
            "prompt_tokens": response.usage.prompt_tokens,
            "completion_tokens": response.usage.completion_tokens,
            "model": model,
            "stop_reason": choice.finish_reason,
        }


# ── Local Stub Provider (for dev/test without API keys) ──────────────────────

_STUDENT_ID = r"(S\d+)"
_RE_STATUS_CHANGE = re.compile(
    rf"(?:change|set|update|mark)\s+(?:student\s+)?{_STUDENT_ID}(?:'s)?\s+(?:status\s+)?(?:to|as)\s+([A-Za-z_]+)",
    re.IGNORECASE,
)
_RE_FIELD_CHANGE = re.compile(
    rf"(?:change|set|update)\s+(?:student\s+)?{_STUDENT_ID}(?:'s)?\s+(email|phone|nationality|name_en|name_kanji|class_id)\s+to\s+(\S+)",
    re.IGNORECASE,
)
_RE_KNOWLEDGE = re.compile(
    r"(?:update|edit|rewrite)\s+(?:the\s+)?(?:knowledge|article)\s+([a-z0-9][a-z0-9-]*)\s*:\s*(.+)",
    re.IGNORECASE | re.DOTALL,
)
_RE_STUDENT_REF = re.compile(rf"\b{_STUDENT_ID}\b")


class LocalStubProvider(LLMProvider):
    """
    Local stub that returns deterministic responses for dev/testing.
    No API key required.

    Recognises a handful of phrasings ("change student S123's status to
    WITHDRAWN", "update knowledge enrollment-guide: ...", "attendance of
    S123") and only ever calls tools that were actually offered.
    """

    def chat(self, messages: list, model: str = "local-stub",
             tools: list | None = None, **kwargs) -> dict:
        offered = {t["name"] for t in (tools or [])}
        last = messages[-1] if messages else {"role": "user", "content": ""}

        if last["role"] == "tool":
            content, tool_calls = self._summarize_tool_results(messages), []
        else:
            content, tool_calls = self._respond(last.get("content", ""), offered, len(messages))

        prompt_words = sum(len(str(m.get("content", "")).split()) for m in messages)
        return {
            "content": content,
            "tool_calls": tool_calls,
            "prompt_tokens": prompt_words * 2,  # rough estimate
            "completion_tokens": len(content.split()) * 2,
            "model": "local-stub",
            "stop_reason": "tool_use" if tool_calls else "end_turn",
        }

    @staticmethod
    def _call(name: str, payload: dict, seq: int) -> dict:
        return {"id": f"stub_{name}_{seq}", "name": name, "input": payload}

    def _respond(self, text: str, offered: set, seq: int) -> tuple[str, list]:
        lower = text.lower()

        m = _RE_FIELD_CHANGE.search(text)
        if m and "propose_data_change" in offered:
            sid, field, value = m.group(1).upper(), m.group(2).lower(), m.group(3).strip(".,")
            return (
                f"I've prepared a change to {sid}'s {field}. It will take effect once an approver accepts it.",
                [self._call("propose_data_change", {
                    "entity_type": "student", "operation": "update", "target_id": sid,
                    "changes": {field: value}, "reason": text.strip(),
                }, seq)],
            )

        m = _RE_STATUS_CHANGE.search(text)
        if m and "propose_data_change" in offered:
            sid, status = m.group(1).upper(), m.group(2).upper()
            return (
                f"I've prepared a status change for {sid} to {status}. "
                "It will take effect once an approver accepts it.",
                [self._call("propose_data_change", {
                    "entity_type": "student", "operation": "update", "target_id": sid,
                    "changes": {"status": status}, "reason": text.strip(),
                }, seq)],
            )
        if (m or _RE_FIELD_CHANGE.search(text)) and "propose_data_change" not in offered:
            return ("I can't change student records for you. Please ask an administrator.", [])

        m = _RE_KNOWLEDGE.search(text)
        if m and "propose_knowledge_update" in offered:
            slug, body = m.group(1).lower(), m.group(2).strip()
            return (
                f"I've drafted an update to '{slug}' for approval.",
                [self._call("propose_knowledge_update",
                            {"slug": slug, "body": body, "reason": "Requested in chat"}, seq)],
            )

        if "pending" in lower and "approv" in lower and "review_pending_approvals" in offered:
            return ("", [self._call("review_pending_approvals", {}, seq)])

        ref = _RE_STUDENT_REF.search(text)
        if "attendance" in lower and "search_attendance" in offered:
            payload = {"student_id": ref.group(1).upper()} if ref else {}
            return ("", [self._call("search_attendance", payload, seq)])
        if ("tuition" in lower or "invoice" in lower or "unpaid" in lower) and "search_tuition" in offered:
            payload = {"student_id": ref.group(1).upper()} if ref else {"unpaid_only": True}
            return ("", [self._call("search_tuition", payload, seq)])
        if (ref or "student" in lower) and "search_students" in offered:
            payload = {"student_id": ref.group(1).upper()} if ref else {}
            return ("", [self._call("search_students", payload, seq)])

        return (
            "I'm the CampusDesk assistant. I can look up students, attendance and tuition, "
            "and answer questions from the staff knowledge base.",
            [],
        )

    @staticmethod
    def _summarize_tool_results(messages: list) -> str:
        results = []
        for m in reversed(messages):
            if m["role"] != "tool":
                break
            results.append(m["content"])
        results.reverse()
        return "Here is what I found:\n" + "\n".join(results)


# ── LLM Gateway (Main Interface) ─────────────────────────────────────────────

class LLMGateway:
    """
    Central gateway for all completion calls.

    Features:
        - Provider routing based on model name
        - Auto-retry with exponential backoff
        - Token/cost logging
        - Local stub fallback when a provider has no API key

    Failures that survive every retry surface as
    ``CompletionServiceUnavailable``; callers never see a raw SDK error.
    """

    PROVIDER_MAP = {
        # Anthropic
        "claude-3-5-haiku-20241022": "anthropic",
        "claude-3-5-sonnet-20241022": "anthropic",
        # OpenAI
        "gpt-4o-mini": "openai",
        "gpt-4o": "openai",
        # Local stub (dev/test)
        "local-stub": "local",
    }

    def __init__(self, default_model: str = "local-stub", max_retries: int = 3,
                 timeout: float = 60.0, backoff_base: float = 1.0, providers: dict | None = None):
        self.default_model = default_model
        self.max_retries = max(1, max_retries)
        self.timeout = timeout
        self.backoff_base = backoff_base
        self._providers = providers if providers is not None else self._init_providers()

    def _init_providers(self) -> dict:
        """Initialize available providers based on environment."""
        providers = {"local": LocalStubProvider()}
        if os.getenv("ANTHROPIC_API_KEY"):
            providers["anthropic"] = AnthropicProvider(timeout=self.timeout)
        if os.getenv("OPENAI_API_KEY"):
            providers["openai"] = OpenAIProvider(timeout=self.timeout)
        return providers

    def _get_provider(self, model: str) -> tuple[LLMProvider, str]:
        """Resolve model to provider, falling back to the local stub if unavailable."""
        provider_name = self.PROVIDER_MAP.get(model, "local")
        if provider_name in self._providers:
            return self._providers[provider_name], provider_name

        logger.warning(
            "Provider '%s' not available (no API key?). Falling back to local stub for model '%s'.",
            provider_name, model,
        )
        return self._providers["local"], "local"

    def chat(
        self,
        messages: list,
        tools: list | None = None,
        model: str | None = None,
        *,
        user: str = "system",
        **kwargs,
    ) -> dict:
        """
        Send a chat completion request with retry.

        Returns:
            dict: {content, tool_calls, prompt_tokens, completion_tokens, model,
                   stop_reason, cost_usd, latency_ms, provider}

        Raises:
            CompletionServiceUnavailable: every attempt failed.
        """
        model = model or self.default_model
        provider, provider_name = self._get_provider(model)

        last_error = None
        for attempt in range(1, self.max_retries + 1):
            start_time = time.time()
            try:
                result = provider.chat(messages, model, tools=tools, **kwargs)
            except Exception as e:
                last_error = e
                logger.warning("LLM call attempt %d/%d failed: %s", attempt, self.max_retries, e,
                               extra={"provider": provider_name, "actor": user})
                if attempt < self.max_retries:
                    backoff = min(self.backoff_base * 2 ** (attempt - 1), 4)
                    threading.Event().wait(backoff)
                continue

            latency_ms = int((time.time() - start_time) * 1000)
            result.setdefault("tool_calls", [])
            result.setdefault("stop_reason", None)
            result["cost_usd"] = calculate_cost(
                result.get("model", model), result["prompt_tokens"], result["completion_tokens"],
            )
            result["latency_ms"] = latency_ms
            result["provider"] = provider_name

            logger.info(
                "LLM call ok model=%s tokens=%d+%d tools=%d cost=$%.6f",
                result["model"], result["prompt_tokens"], result["completion_tokens"],
                len(result["tool_calls"]), result["cost_usd"],
                extra={"provider": provider_name, "actor": user, "duration_ms": latency_ms},
            )
            return result

        logger.error("LLM call failed after %d attempts: %s", self.max_retries, last_error,
                     extra={"provider": provider_name, "actor": user})
        raise CompletionServiceUnavailable(
            f"Completion service unavailable after {self.max_retries} attempt(s)",
            provider=provider_name,
        ) from last_error


# ── Per-request access ───────────────────────────────────────────────────────

def default_gateway_factory(app) -> LLMGateway:
    return LLMGateway(
        default_model=app.config.get("LLM_DEFAULT_CHAT_MODEL", "local-stub"),
        max_retries=app.config.get("CHAT_LLM_MAX_RETRIES", 3),
        timeout=app.config.get("LLM_TIMEOUT_SECONDS", 60),
    )


def init_gateway(app, factory=None):
    """Register the gateway factory; tests pass their own to inject a fake."""
    app.extensions[GATEWAY_FACTORY_KEY] = factory or default_gateway_factory


def get_gateway():
    """Return the gateway bound to the current request, building it on first use."""
    gateway = getattr(g, "llm_gateway", None)
    if gateway is None:
        factory = current_app.extensions.get(GATEWAY_FACTORY_KEY, default_gateway_factory)
        gateway = factory(current_app)
        g.llm_gateway = gateway
    return gateway

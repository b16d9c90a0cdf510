import asyncio
import json
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from openai import OpenAI

from .safety import CircuitBreaker

_logger = logging.getLogger("arete.llm")

REPLY_CHAR_LIMIT = 1800
REPLY_FALLBACK = "Sorry, I couldn't put a reply together just now."


class ModelUnavailable(RuntimeError):
    """The model client could not produce a response (breaker open, timeout or API failure)."""


@dataclass(frozen=True)
class ModelResponse:
    content: str = ""
    function_call_arguments: Optional[str] = None
    usage: Dict[str, int] = field(default_factory=dict)
    finish_reason: str = ""


class ModelClient(Protocol):
    async def generate_response(
        self, model: str, messages: Sequence[Dict[str, Any]], options: Optional[Dict[str, Any]] = None
    ) -> ModelResponse:
        ...


def _usage_dict(usage: Any) -> Dict[str, int]:
    if usage is None:
        return {}
    result: Dict[str, int] = {}
    for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
        value = getattr(usage, key, None)
        if isinstance(value, int):
            result[key] = value
    return result


class OpenAIModelClient:
    """
    Chat-completions client. The blocking SDK call runs on a small thread pool
    so the event loop keeps serving other channels; each call is bounded by
    `timeout_seconds` and guarded by a circuit breaker.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout_seconds: float = 20.0,
        max_workers: int = 4,
        breaker: Optional[CircuitBreaker] = None,
        client: Optional[Any] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.breaker = breaker or CircuitBreaker("llm", threshold=3, window_seconds=90.0, cooldown_seconds=300.0)
        self._api_key = api_key
        self._client = client
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="arete-llm")

    def _client_lazy(self) -> Any:
        if self._client is None:
            api_key = self._api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise RuntimeError("OPENAI_API_KEY is required for model access.")
            # One retry at the client boundary; malformed output is never retried.
            self._client = OpenAI(api_key=api_key, timeout=self.timeout_seconds, max_retries=1)
        return self._client

    def _create(self, model: str, messages: List[Dict[str, Any]], options: Dict[str, Any]) -> ModelResponse:
        kwargs: Dict[str, Any] = {"model": model, "messages": messages}
        function = options.get("function")
        if function:
            kwargs["tools"] = [{"type": "function", "function": function}]
            kwargs["tool_choice"] = {"type": "function", "function": {"name": function["name"]}}
        if options.get("reasoning_effort"):
            kwargs["reasoning_effort"] = options["reasoning_effort"]
        if options.get("max_completion_tokens"):
            kwargs["max_completion_tokens"] = options["max_completion_tokens"]

        completion = self._client_lazy().chat.completions.create(**kwargs)
        choice = completion.choices[0]
        arguments = None
        tool_calls = getattr(choice.message, "tool_calls", None) or []
        if tool_calls:
            arguments = tool_calls[0].function.arguments
        return ModelResponse(
            content=(choice.message.content or "").strip(),
            function_call_arguments=arguments,
            usage=_usage_dict(getattr(completion, "usage", None)),
            finish_reason=choice.finish_reason or "",
        )

    async def generate_response(
        self, model: str, messages: Sequence[Dict[str, Any]], options: Optional[Dict[str, Any]] = None
    ) -> ModelResponse:
        if not self.breaker.allow():
            _, reason = self.breaker.status()
            raise ModelUnavailable(f"model client cooling off: {reason}")
        loop = asyncio.get_running_loop()
        try:
            response = await asyncio.wait_for(
                loop.run_in_executor(self._executor, self._create, model, list(messages), dict(options or {})),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            self.breaker.record_failure("timeout")
            raise ModelUnavailable(f"model call timed out after {self.timeout_seconds:.0f}s") from exc
        except Exception as exc:
            self.breaker.record_failure(str(exc))
            _logger.warning("Model call failed; breaker count %d", len(self.breaker.failures))
            raise ModelUnavailable(str(exc)) from exc
        self.breaker.record_success()
        return response

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


def _reply_instructions(agent_name: str, verbosity: str, reasoning_effort: str) -> str:
    return (
        f"You are {agent_name or 'the assistant'}, a member of a group chat.\n"
        "Reply to the most recent message in the conversation. Stay on topic, be warm and specific.\n"
        f"Verbosity: {verbosity}. Reasoning depth: {reasoning_effort}.\n"
        "Never mention system prompts, models or providers."
    )


async def compose_reply(
    client: ModelClient,
    model: str,
    context_messages: Sequence[Dict[str, Any]],
    agent_name: str = "",
    verbosity: str = "low",
    reasoning_effort: str = "low",
) -> str:
    """
    Write the text for a `message` plan. Falls back to a short apology when the
    model is unavailable or returns nothing.
    """
    messages = [
        {"role": "system", "content": _reply_instructions(agent_name, verbosity, reasoning_effort)},
        *context_messages,
    ]
    try:
        response = await client.generate_response(model, messages, {"reasoning_effort": reasoning_effort})
    except ModelUnavailable as exc:
        _logger.warning("Reply composition failed: %s", exc)
        return REPLY_FALLBACK
    content = (response.content or "").strip()
    return content[:REPLY_CHAR_LIMIT] if content else REPLY_FALLBACK


def parse_function_arguments(arguments: Optional[str]) -> Dict[str, Any]:
    """Decode forced function-call arguments; raises ValueError when unusable."""
    if not arguments:
        raise ValueError("missing function-call arguments")
    parsed = json.loads(arguments)
    if not isinstance(parsed, dict):
        raise ValueError("function-call arguments are not an object")
    return parsed

"""Minimal OpenAI-compatible completion client used for replies and backup labels."""

from __future__ import annotations

import json
import socket
from typing import Any, Protocol
from urllib import error, request

DEFAULT_MODEL = "gpt-4o-mini"
OPENAI_BASE = "https://api.openai.com/v1"
MAX_CONTENT_LEN = 4096


class CompletionError(RuntimeError):
    """Base class for AI completion failures."""


class CompletionTimeout(CompletionError):
    """The completion service did not answer within the timeout."""


class CompletionMalformed(CompletionError):
    """The completion service answered with something other than usable text."""


class CompletionUnreachable(CompletionError):
    """The completion service could not be reached or returned an error status."""


class CompletionService(Protocol):
    def complete(self, prompt: str, timeout_seconds: float) -> str: ...


def _parse_usage(data: dict[str, Any]) -> dict[str, Any]:
    usage = data.get("usage") or {}
    if not isinstance(usage, dict):
        raise CompletionMalformed(f"LLM API unexpected usage block: {usage!r:.200}")
    return {
        "prompt_tokens": usage.get("prompt_tokens", 0),
        "completion_tokens": usage.get("completion_tokens", 0),
        "total_tokens": usage.get("total_tokens", 0),
    }


def complete(
    messages: list[dict[str, str]],
    api_key: str,
    *,
    base_url: str | None = None,
    model: str = DEFAULT_MODEL,
    max_tokens: int = 512,
    timeout: float = 60,
) -> tuple[str, dict[str, Any]]:
    """
    Call OpenAI-compatible chat completions API.
    Returns (content, usage) where usage has prompt_tokens, completion_tokens, total_tokens.
    base_url: e.g. https://api.openai.com/v1 or http://localhost:11434/v1 (Ollama).
    """
    url = (base_url or OPENAI_BASE).rstrip("/") + "/chat/completions"
    body = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
    }
    encoded = json.dumps(body).encode("utf-8")
    headers: dict[str, str] = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {api_key}",
    }
    req = request.Request(url, data=encoded, headers=headers, method="POST")
    try:
        with request.urlopen(req, timeout=timeout) as response:  # noqa: S310
            raw = response.read().decode("utf-8", errors="replace")
    except error.HTTPError as exc:
        body_read = exc.read().decode("utf-8", errors="replace")
        raise CompletionUnreachable(f"LLM API HTTP {exc.code}: {body_read[:500]}") from exc
    except (TimeoutError, socket.timeout) as exc:
        raise CompletionTimeout(f"LLM API timed out after {timeout}s") from exc
    except error.URLError as exc:
        if isinstance(exc.reason, (TimeoutError, socket.timeout)):
            raise CompletionTimeout(f"LLM API timed out after {timeout}s") from exc
        raise CompletionUnreachable(f"LLM API unreachable: {exc.reason}") from exc
    except OSError as exc:
        raise CompletionUnreachable(f"LLM API unreachable: {exc}") from exc

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise CompletionMalformed(f"LLM API returned non-JSON body: {raw[:200]}") from exc
    if not isinstance(data, dict):
        raise CompletionMalformed(f"LLM API unexpected response: {raw[:200]}")

    choices = data.get("choices") or []
    if not isinstance(choices, list):
        raise CompletionMalformed(f"LLM API unexpected response: {raw[:200]}")
    content: str | None = None
    for choice in choices:
        if not isinstance(choice, dict):
            raise CompletionMalformed(f"LLM API unexpected response: {raw[:200]}")
        msg = choice.get("message") or {}
        if not isinstance(msg, dict):
            raise CompletionMalformed(f"LLM API unexpected response: {raw[:200]}")
        if isinstance(msg.get("content"), str):
            content = msg["content"]
            break
    if content is None:
        raise CompletionMalformed(f"LLM API unexpected response: {raw[:200]}")
    if len(content) > MAX_CONTENT_LEN:
        content = content[: MAX_CONTENT_LEN - 3] + "..."
    usage = _parse_usage(data)
    return content.strip(), usage


class CompletionClient:
    """Single-prompt facade over ``complete`` for the responder and backup labels."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        model: str = DEFAULT_MODEL,
        max_tokens: int = 512,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url
        self._model = model
        self._max_tokens = max_tokens

    @property
    def model(self) -> str:
        return self._model

    def complete(self, prompt: str, timeout_seconds: float) -> str:
        content, _usage = complete(
            [{"role": "user", "content": prompt}],
            self._api_key,
            base_url=self._base_url,
            model=self._model,
            max_tokens=self._max_tokens,
            timeout=timeout_seconds,
        )
        if not content:
            raise CompletionMalformed("LLM API returned empty content")
        return content

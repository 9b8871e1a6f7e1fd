# api_handler.py
from __future__ import annotations

import logging
import threading
from typing import Any, Iterator, Optional

try:
    import openai  # type: ignore
except ImportError:
    openai = None  # type: ignore


LOGGER = logging.getLogger(__name__)


class OpenAIChatGenerator:
    """
    Streaming chat-completions backend for the story pipeline.

    Works against the OpenAI API and against any OpenAI-compatible server
    (llama.cpp, Ollama, vLLM...) by pointing ``base_url`` at it.

    Each prompt opens a fresh single-turn conversation.  Only text deltas are
    yielded; reasoning traces and tool-call notices some servers interleave
    in the stream are logged and skipped.

    Compatible with OpenAI Python SDK >= 1.0.
    """

    def __init__(
        self,
        model_name: str,
        api_key: str,
        *,
        base_url: Optional[str] = None,
        default_max_tokens: int = 512,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
        client: Any = None,
    ) -> None:
        self.model_name = (model_name or "").strip()
        self.api_key = (api_key or "").strip()
        self.base_url = (base_url or "").strip() or None
        self.default_max_tokens = int(default_max_tokens or 512)
        self.temperature = temperature
        self.top_p = top_p
        if not self.model_name:
            raise ValueError("A model name is required for the OpenAI backend.")

        if client is None:
            if openai is None:
                raise RuntimeError("Install the 'openai' package to use the API backend.")
            client_cls = getattr(openai, "OpenAI", None)
            if client_cls is None:
                raise RuntimeError("OpenAI client not available. Update the 'openai' package.")
            client = client_cls(api_key=self.api_key, base_url=self.base_url)
        self._client = client

    # ---------------- public API ----------------
    def stream_response(
        self,
        prompt: str,
        *,
        max_new_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Iterator[str]:
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValueError("prompt must be a non-empty string.")
        max_tokens = int(max_new_tokens if max_new_tokens is not None else self.default_max_tokens)
        if max_tokens <= 0:
            raise ValueError("max_new_tokens must be positive.")

        kwargs = {
            "model": self.model_name,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_tokens,
            "n": 1,
            "stream": True,
        }
        temperature = self.temperature if temperature is None else temperature
        top_p = self.top_p if top_p is None else top_p
        if temperature is not None:
            kwargs["temperature"] = float(temperature)
        if top_p is not None:
            kwargs["top_p"] = float(top_p)

        stream = self._client.chat.completions.create(**kwargs)
        try:
            for chunk in stream:
                text = self._extract_text_from_chunk(chunk)
                if text:
                    yield text
                if cancel_event is not None and cancel_event.is_set():
                    LOGGER.info("Chat completion stream cancelled by caller.")
                    break
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                close()

    def generate_response(
        self,
        prompt: str,
        *,
        max_new_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
    ) -> str:
        fragments = self.stream_response(
            prompt,
            max_new_tokens=max_new_tokens,
            temperature=temperature,
            top_p=top_p,
        )
        return "".join(fragments).strip()

    def get_compute_device(self) -> str:
        return "OpenAI API" if self.base_url is None else f"API at {self.base_url}"

    # ---------------- extractors ----------------
    def _extract_text_from_chunk(self, chunk: Any) -> str:
        choices = getattr(chunk, "choices", None) or []
        if not choices:
            return ""
        first = choices[0]
        delta = getattr(first, "delta", None)
        if delta is None:
            return ""

        reasoning = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None)
        if reasoning:
            LOGGER.debug("Skipping reasoning fragment: %s", self._shorten_debug(str(reasoning), 50))
        tool_calls = getattr(delta, "tool_calls", None)
        if tool_calls:
            LOGGER.debug("Skipping %d tool call notice(s)", len(tool_calls))
        finish_reason = getattr(first, "finish_reason", None)
        if finish_reason:
            LOGGER.debug("Chat completion finished: %s", finish_reason)

        content = getattr(delta, "content", None)
        return content if isinstance(content, str) else ""

    @staticmethod
    def _shorten_debug(s: str, limit: int = 1200) -> str:
        s = s.replace("\n", " ")
        return (s[:limit] + "…") if len(s) > limit else s

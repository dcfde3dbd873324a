"""Normalization of provider streaming payloads into plain text tokens.

Providers stream in different shapes:

    OpenAI / Groq   SSE, data: {"choices": [{"delta": {"content": "..."}}]}
    Anthropic       SSE, data: {"type": "content_block_delta", "delta": {"text": "..."}}
    Gemini          SSE (alt=sse) or a JSON array streamed element by element,
                    {"candidates": [{"content": {"parts": [{"text": "..."}]}}]}

A StreamNormalizer is fed raw chunks exactly as they arrive from the network,
with arbitrary boundaries (mid-line, mid-JSON, mid-UTF-8 sequence), and returns
the text tokens completed by each chunk. Create one instance per in-flight
request; instances share no state.

Lines that do not parse are held in a pending buffer and retried joined with
the following line(s). Pending text is dropped with a warning when a later
standalone event parses, when the buffer grows past ``max_pending_lines``, or
at ``flush()``. Payload content never raises.
"""

from __future__ import annotations

import codecs
import json
from typing import Any

import structlog

from llm_broker.registry import ProviderKind

log = structlog.get_logger(__name__)

_SSE_SKIP_PREFIXES = ("event:", "id:", "retry:")
_DONE = "[DONE]"


class StreamNormalizer:
    """Incremental parser for one provider response stream.

    Attributes:
        usage: Token usage reported by the provider, if any
            ({"input_tokens": int, "output_tokens": int})
        error: Error message from an in-stream error event, if any
    """

    def __init__(self, max_pending_lines: int = 64) -> None:
        if max_pending_lines < 1:
            raise ValueError("max_pending_lines must be at least 1")
        self._max_pending_lines = max_pending_lines
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._tail = ""
        self._pending: list[str] = []
        self._provider: ProviderKind | None = None
        self.usage: dict[str, int] = {}
        self.error: str | None = None

    def normalize(self, provider: ProviderKind | str, raw_chunk: bytes | str) -> list[str]:
        """Consume one raw chunk and return the tokens it completed.

        Raises:
            ValueError: ``provider`` is not a known provider kind
        """
        self._provider = ProviderKind(provider)

        if isinstance(raw_chunk, bytes):
            text = self._decoder.decode(raw_chunk)
        else:
            text = raw_chunk

        data = self._tail + text
        lines = data.split("\n")
        self._tail = lines.pop()

        tokens: list[str] = []
        for line in lines:
            tokens.extend(self._process_line(line))
        return tokens

    def flush(self) -> list[str]:
        """Finish the stream: process the unterminated tail and drain pending."""
        tokens: list[str] = []
        remainder = self._tail + self._decoder.decode(b"", final=True)
        self._tail = ""
        if remainder and self._provider is not None:
            tokens.extend(self._process_line(remainder))

        if self._pending:
            log.warning(
                "stream_normalizer.unparsed_dropped",
                provider=self._provider.value if self._provider else None,
                reason="end_of_stream",
                lines=len(self._pending),
                preview=self._preview(),
            )
            self._pending.clear()
        return tokens

    # ------------------------------------------------------------------ #
    # Line handling
    # ------------------------------------------------------------------ #

    def _process_line(self, line: str) -> list[str]:
        payload = self._payload(line)
        if payload is None:
            return []

        if self._pending:
            joined = self._parse("\n".join([*self._pending, payload]))
            if joined is not None:
                self._pending.clear()
                return self._extract(joined)

            standalone = self._parse(payload)
            if standalone is not None and self._is_event(standalone):
                log.warning(
                    "stream_normalizer.unparsed_dropped",
                    provider=self._provider.value if self._provider else None,
                    reason="superseded",
                    lines=len(self._pending),
                    preview=self._preview(),
                )
                self._pending.clear()
                return self._extract(standalone)

            self._hold(payload)
            return []

        obj = self._parse(payload)
        if obj is None:
            # Bare array punctuation between Gemini elements
            if not payload.strip("[], \t"):
                return []
            self._hold(payload)
            return []
        return self._extract(obj)

    @staticmethod
    def _payload(line: str) -> str | None:
        line = line.rstrip("\r")
        stripped = line.strip()
        if not stripped or stripped.startswith(":"):
            return None
        if stripped.startswith(_SSE_SKIP_PREFIXES):
            return None
        if stripped.startswith("data:"):
            stripped = stripped[len("data:"):].strip()
            if not stripped:
                return None
        if stripped == _DONE:
            return None
        return stripped

    def _hold(self, payload: str) -> None:
        self._pending.append(payload)
        if len(self._pending) > self._max_pending_lines:
            log.warning(
                "stream_normalizer.unparsed_dropped",
                provider=self._provider.value if self._provider else None,
                reason="pending_limit",
                lines=len(self._pending),
                preview=self._preview(),
            )
            self._pending.clear()

    @staticmethod
    def _parse(text: str) -> dict[str, Any] | None:
        for candidate in (text, text.strip().lstrip("[,").rstrip("],").strip()):
            if not candidate:
                continue
            try:
                obj = json.loads(candidate)
            except ValueError:
                continue
            if isinstance(obj, dict):
                return obj
        return None

    def _preview(self) -> str:
        return "\n".join(self._pending)[:120]

    # ------------------------------------------------------------------ #
    # Per-provider extraction
    # ------------------------------------------------------------------ #

    def _is_event(self, obj: dict[str, Any]) -> bool:
        if "error" in obj:
            return True
        if self._provider == ProviderKind.ANTHROPIC:
            return "type" in obj
        if self._provider == ProviderKind.GEMINI:
            return "candidates" in obj or "usageMetadata" in obj
        return "choices" in obj

    def _extract(self, obj: dict[str, Any]) -> list[str]:
        if self._record_error(obj):
            return []

        try:
            if self._provider == ProviderKind.ANTHROPIC:
                text = self._extract_anthropic(obj)
            elif self._provider == ProviderKind.GEMINI:
                text = self._extract_gemini(obj)
            else:
                text = self._extract_openai(obj)
        except (AttributeError, IndexError, KeyError, TypeError):
            log.debug("stream_normalizer.unrecognized_event", keys=sorted(obj))
            return []

        return [text] if isinstance(text, str) and text else []

    def _extract_openai(self, obj: dict[str, Any]) -> str | None:
        usage = obj.get("usage")
        if isinstance(usage, dict):
            self._set_usage(usage.get("prompt_tokens"), usage.get("completion_tokens"))

        choices = obj.get("choices") or []
        if not choices:
            return None
        choice = choices[0]
        delta = choice.get("delta") or {}
        content = delta.get("content")
        if content is None:
            content = choice.get("text")
        return content

    def _extract_anthropic(self, obj: dict[str, Any]) -> str | None:
        event_type = obj.get("type")
        if event_type == "message_start":
            usage = obj["message"].get("usage") or {}
            self._set_usage(usage.get("input_tokens"), usage.get("output_tokens"))
            return None
        if event_type == "message_delta":
            usage = obj.get("usage") or {}
            self._set_usage(None, usage.get("output_tokens"))
            return None
        if event_type != "content_block_delta":
            return None
        return obj["delta"].get("text")

    def _extract_gemini(self, obj: dict[str, Any]) -> str | None:
        usage = obj.get("usageMetadata")
        if isinstance(usage, dict):
            self._set_usage(usage.get("promptTokenCount"), usage.get("candidatesTokenCount"))

        candidates = obj.get("candidates") or []
        if not candidates:
            return None
        return candidates[0]["content"]["parts"][0].get("text")

    def _set_usage(self, input_tokens: Any, output_tokens: Any) -> None:
        if isinstance(input_tokens, int):
            self.usage["input_tokens"] = input_tokens
        if isinstance(output_tokens, int):
            self.usage["output_tokens"] = output_tokens

    def _record_error(self, obj: dict[str, Any]) -> bool:
        error = obj.get("error")
        if error is None:
            return False
        if isinstance(error, dict):
            message = str(error.get("message") or error.get("type") or error)
        else:
            message = str(error)
        self.error = message
        log.warning(
            "stream_normalizer.provider_error_event",
            provider=self._provider.value if self._provider else None,
            error=message,
        )
        return True

"""
LLM Client
==========
Stateless wrappers that issue exactly one HTTP request per generation call.

Two providers are supported:

- ``GeminiClient``: Google Generative Language REST API
  (``models/{model}:generateContent``), API key in the query string.
- ``DeepSeekClient``: OpenAI-compatible ``/chat/completions`` endpoint,
  bearer-token auth.

There are no retries here -- the repair loop decides what to do with a
failed call.  Instances are constructed explicitly and handed to the
orchestrator; nothing in this module is a process-wide singleton.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import httpx

from testgen_agent.cancellation import CancellationToken
from testgen_agent.config import AgentConfig, LLMConfig
from testgen_agent.errors import (
    ConfigurationError,
    ContentBlockedError,
    MalformedResponseError,
    OperationCancelled,
    TransportError,
)
from testgen_agent.observability import StructuredLogger

logger = logging.getLogger("testgen_agent.llm_client")

_GEMINI_SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)

# finishReason values that mean the provider withheld the content
_GEMINI_BLOCKED_REASONS = frozenset({
    "SAFETY", "RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII",
})

# finishReason values that still carry usable (possibly truncated) text
_GEMINI_WARN_REASONS = frozenset({"OTHER", "MAX_TOKENS"})


@dataclass
class GenerationResult:
    """Unprocessed model output for one call.

    Attributes:
        raw_text: Generated text, before any code extraction.
        model: Model identifier that produced it.
        finish_reason: Provider-reported finish reason (may be empty).
        prompt_tokens: Input token count, if the provider reported it.
        output_tokens: Output token count, if the provider reported it.
        latency_ms: Wall-clock duration of the HTTP call.
    """

    raw_text: str
    model: str = ""
    finish_reason: str = ""
    prompt_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    latency_ms: float = 0.0


class BaseLLMClient(ABC):
    """Shared request plumbing for the concrete providers.

    Args:
        api_key: Provider credential.  ``None``/empty makes every call
            raise :class:`ConfigurationError`.
        model: Model identifier.
        config: ``LLMConfig`` with generation parameters and timeouts.
        http_client: Optional pre-built ``httpx.Client`` (tests inject one
            backed by ``httpx.MockTransport``).  When omitted the client
            creates and owns its own.
    """

    provider = "base"
    credential_env = ""

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        config: Optional[LLMConfig] = None,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.config = config or LLMConfig()
        self._owns_http = http_client is None
        self._http = http_client or httpx.Client()
        self._events = StructuredLogger()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_configured(self) -> bool:
        return bool(self.api_key and self.api_key.strip())

    def generate(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        temperature: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> str:
        """Generate text for *prompt*.

        Args:
            prompt: User prompt; must be non-empty.
            system_instruction: Optional system prompt.
            temperature: Sampling temperature in ``[0, 2]``.  ``None`` uses
                the configured default.
            cancel: Optional cancellation token.

        Returns:
            The generated text.

        Raises:
            ValueError: Empty prompt or temperature out of range.
            ConfigurationError: No API key configured.
            TransportError: Network failure or non-2xx status.
            ContentBlockedError: Provider withheld the content.
            MalformedResponseError: No extractable text in the response.
            OperationCancelled: *cancel* fired before or during the call.
        """
        return self.generate_result(
            prompt, system_instruction, temperature, cancel
        ).raw_text

    def generate_result(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        temperature: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> GenerationResult:
        """Like :meth:`generate` but returns the full :class:`GenerationResult`."""
        if not prompt or not prompt.strip():
            raise ValueError("prompt must be non-empty")
        if temperature is None:
            temperature = self.config.temperature
        if not 0.0 <= temperature <= 2.0:
            raise ValueError(f"temperature must be within [0, 2], got {temperature}")
        if not self.is_configured():
            raise ConfigurationError(
                f"{self.credential_env} is not set -- cannot call {self.provider}"
            )
        if cancel is not None:
            cancel.raise_if_cancelled()

        url, params, headers, payload = self._build_request(
            prompt, system_instruction, temperature
        )

        start = time.perf_counter()
        body = self._post(url, params, headers, payload, cancel)
        latency_ms = (time.perf_counter() - start) * 1000

        result = self._parse_response(body)
        result.latency_ms = latency_ms
        if not result.model:
            result.model = self.model

        self._events.log_llm_call(
            provider=self.provider,
            model=result.model,
            tokens_in=result.prompt_tokens,
            tokens_out=result.output_tokens,
            latency_ms=round(latency_ms, 1),
        )
        return result

    def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_http:
            self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    # ------------------------------------------------------------------
    # Provider hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _build_request(
        self,
        prompt: str,
        system_instruction: Optional[str],
        temperature: float,
    ) -> Tuple[str, Dict[str, str], Dict[str, str], Dict[str, Any]]:
        """Return ``(url, query_params, headers, json_payload)``."""

    @abstractmethod
    def _parse_response(self, body: str) -> GenerationResult:
        """Extract generated text from a 2xx response body."""

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _timeout(self, cancel: Optional[CancellationToken]) -> httpx.Timeout:
        cfg = self.config
        connect, write, read = cfg.connect_timeout, cfg.write_timeout, cfg.read_timeout
        if cancel is not None:
            connect = cancel.clip_timeout(connect)
            write = cancel.clip_timeout(write)
            read = cancel.clip_timeout(read)
        return httpx.Timeout(read, connect=connect, write=write)

    def _post(
        self,
        url: str,
        params: Dict[str, str],
        headers: Dict[str, str],
        payload: Dict[str, Any],
        cancel: Optional[CancellationToken],
    ) -> str:
        """POST *payload* and return the body of a 2xx response.

        With a token the request runs on a daemon worker thread and the
        caller waits on the token, so a cancel arriving while the provider
        is still composing its response headers returns immediately.  The
        abandoned worker ends on its own read timeout.
        """
        if cancel is None:
            return self._send(url, params, headers, payload, None)

        done = threading.Event()
        outcome: Dict[str, Any] = {}

        def worker():
            try:
                outcome["body"] = self._send(url, params, headers, payload, cancel)
            except Exception as e:
                outcome["error"] = e
            finally:
                done.set()

        thread = threading.Thread(
            target=worker, name=f"{self.provider}-request", daemon=True
        )
        cancel.add_callback(done.set)
        try:
            thread.start()
            done.wait(cancel.remaining())
        finally:
            cancel.remove_callback(done.set)

        if "error" in outcome:
            raise outcome["error"]
        if "body" in outcome and not cancel.cancelled:
            return outcome["body"]
        logger.info("%s request abandoned after cancellation", self.provider)
        raise OperationCancelled(f"{self.provider} request cancelled")

    def _send(
        self,
        url: str,
        params: Dict[str, str],
        headers: Dict[str, str],
        payload: Dict[str, Any],
        cancel: Optional[CancellationToken],
    ) -> str:
        try:
            with self._http.stream(
                "POST",
                url,
                params=params,
                headers=headers,
                json=payload,
                timeout=self._timeout(cancel),
            ) as response:
                if cancel is not None:
                    cancel.add_callback(response.close)
                try:
                    response.read()
                finally:
                    if cancel is not None:
                        cancel.remove_callback(response.close)

                status = response.status_code
                body = response.text
        except (httpx.HTTPError, httpx.StreamError) as e:
            if cancel is not None and cancel.cancelled:
                raise OperationCancelled(f"{self.provider} request cancelled") from e
            raise TransportError(f"{self.provider} request failed: {e}") from e

        if not 200 <= status < 300:
            raise TransportError(
                f"{self.provider} API error {status}: {body or 'no details'}",
                status_code=status,
                body=body,
            )
        return body

    def _load_json(self, body: str) -> Dict[str, Any]:
        try:
            data = json.loads(body)
        except ValueError as e:
            raise MalformedResponseError(
                f"Failed to parse {self.provider} response: {e}\n"
                f"Response preview: {body[:200]}"
            ) from e
        if not isinstance(data, dict):
            raise MalformedResponseError(
                f"Unexpected {self.provider} response type: {type(data).__name__}"
            )
        return data


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------

class GeminiClient(BaseLLMClient):
    """Google Gemini ``generateContent`` client."""

    provider = "gemini"
    credential_env = "GEMINI_API_KEY"

    def _build_request(self, prompt, system_instruction, temperature):
        cfg = self.config
        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": cfg.max_output_tokens,
                "topP": cfg.top_p,
                "topK": cfg.top_k,
            },
            "safetySettings": [
                {"category": category, "threshold": "BLOCK_NONE"}
                for category in _GEMINI_SAFETY_CATEGORIES
            ],
        }
        if system_instruction and system_instruction.strip():
            payload["system_instruction"] = {
                "parts": [{"text": system_instruction}],
            }

        url = f"{cfg.gemini_base_url.rstrip('/')}/models/{self.model}:generateContent"
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        return url, {"key": self.api_key}, headers, payload

    def _parse_response(self, body: str) -> GenerationResult:
        data = self._load_json(body)

        candidates = data.get("candidates") or []
        error = data.get("error")
        if error and not candidates:
            if isinstance(error, dict):
                message = error.get("message", "Unknown API error")
                code = error.get("code")
            else:
                message, code = str(error), None
            raise TransportError(
                f"Gemini API returned error: {message}",
                status_code=code if isinstance(code, int) else None,
                body=body,
            )

        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise ContentBlockedError(
                f"Prompt was blocked by Gemini ({block_reason})",
                reason=block_reason,
            )

        if not candidates:
            raise MalformedResponseError(
                f"No candidates in Gemini response: {body[:200]}"
            )

        blocked = ""
        for candidate in candidates:
            if not isinstance(candidate, dict):
                continue
            finish_reason = candidate.get("finishReason", "") or ""
            if finish_reason in _GEMINI_BLOCKED_REASONS:
                blocked = blocked or finish_reason
                continue

            text = self._first_text(candidate)
            if not text:
                continue

            if finish_reason in _GEMINI_WARN_REASONS:
                logger.warning(
                    "Gemini finished with %s, using the text it returned",
                    finish_reason,
                )

            usage = data.get("usageMetadata") or {}
            return GenerationResult(
                raw_text=text,
                model=data.get("modelVersion", ""),
                finish_reason=finish_reason,
                prompt_tokens=usage.get("promptTokenCount"),
                output_tokens=usage.get("candidatesTokenCount"),
            )

        if blocked:
            raise ContentBlockedError(
                f"Content was blocked by Gemini ({blocked})", reason=blocked
            )
        raise MalformedResponseError(
            "Empty or missing text in all Gemini response parts"
        )

    @staticmethod
    def _first_text(candidate: Dict[str, Any]) -> str:
        """First non-blank part text of *candidate* (or its bare ``text``)."""
        content = candidate.get("content")
        if not isinstance(content, dict):
            text = candidate.get("text") or ""
            return text if text.strip() else ""

        for part in content.get("parts") or []:
            if isinstance(part, dict):
                text = part.get("text") or ""
                if text.strip():
                    return text
        return ""


# ---------------------------------------------------------------------------
# DeepSeek (OpenAI-compatible chat completions)
# ---------------------------------------------------------------------------

class DeepSeekClient(BaseLLMClient):
    """DeepSeek chat-completions client."""

    provider = "deepseek"
    credential_env = "DEEPSEEK_API_KEY"

    def _build_request(self, prompt, system_instruction, temperature):
        messages = []
        if system_instruction and system_instruction.strip():
            messages.append({"role": "system", "content": system_instruction})
        messages.append({"role": "user", "content": prompt})

        payload = {
            "model": self.model,
            "messages": messages,
            "stream": False,
            "temperature": temperature,
            "max_tokens": self.config.max_output_tokens,
        }
        url = f"{self.config.deepseek_base_url.rstrip('/')}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        return url, {}, headers, payload

    def _parse_response(self, body: str) -> GenerationResult:
        data = self._load_json(body)

        choices = data.get("choices") or []
        if not choices:
            error = data.get("error")
            if error:
                message = error.get("message") if isinstance(error, dict) else str(error)
                raise TransportError(f"DeepSeek API returned error: {message}", body=body)
            raise MalformedResponseError(f"No choices in DeepSeek response: {body[:200]}")

        for choice in choices:
            if not isinstance(choice, dict):
                continue
            finish_reason = choice.get("finish_reason") or ""
            content = (choice.get("message") or {}).get("content") or ""
            if finish_reason == "content_filter" and not content.strip():
                raise ContentBlockedError(
                    "Content was blocked by DeepSeek content filter",
                    reason=finish_reason,
                )
            if content.strip():
                usage = data.get("usage") or {}
                return GenerationResult(
                    raw_text=content,
                    model=data.get("model", ""),
                    finish_reason=finish_reason,
                    prompt_tokens=usage.get("prompt_tokens"),
                    output_tokens=usage.get("completion_tokens"),
                )

        raise MalformedResponseError("Empty message content in all DeepSeek choices")


def create_llm_client(
    config: Optional[AgentConfig] = None,
    http_client: Optional[httpx.Client] = None,
) -> BaseLLMClient:
    """Build the client for the configured provider.

    Args:
        config: ``AgentConfig`` (uses :func:`get_config` when ``None``).
        http_client: Optional ``httpx.Client`` to share.

    Returns:
        A :class:`GeminiClient` or :class:`DeepSeekClient`.
    """
    if config is None:
        from testgen_agent.config import get_config
        config = get_config()

    if config.llm.provider == "deepseek":
        return DeepSeekClient(
            api_key=config.deepseek_api_key,
            model=config.llm.deepseek_model,
            config=config.llm,
            http_client=http_client,
        )
    return GeminiClient(
        api_key=config.gemini_api_key,
        model=config.llm.gemini_model,
        config=config.llm,
        http_client=http_client,
    )

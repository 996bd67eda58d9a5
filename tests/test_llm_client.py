"""
Tests for the LLM clients
=========================
Request serialization, response parsing and error classification for the
Gemini and DeepSeek clients.  HTTP is served by ``httpx.MockTransport``,
or by a loopback server for in-flight cancellation, so no network access
or API keys are needed.
"""

import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import httpx
import pytest

from testgen_agent.cancellation import CancellationToken
from testgen_agent.config import AgentConfig, LLMConfig
from testgen_agent.errors import (
    ConfigurationError,
    ContentBlockedError,
    MalformedResponseError,
    OperationCancelled,
    TransportError,
)
from testgen_agent.llm_client import (
    DeepSeekClient,
    GeminiClient,
    create_llm_client,
)


def _gemini_body(*texts, finish_reason="STOP", **extra):
    body = {
        "candidates": [
            {
                "content": {"role": "model", "parts": [{"text": t} for t in texts]},
                "finishReason": finish_reason,
            }
        ],
        "usageMetadata": {"promptTokenCount": 12, "candidatesTokenCount": 34},
        "modelVersion": "gemini-2.5-flash",
    }
    body.update(extra)
    return body


class Recorder:
    """MockTransport handler that records requests and replays a response."""

    def __init__(self, status=200, body=None, raw=None, exc=None):
        self.status = status
        self.body = body
        self.raw = raw
        self.exc = exc
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.exc is not None:
            raise self.exc
        if self.raw is not None:
            return httpx.Response(self.status, text=self.raw)
        return httpx.Response(self.status, json=self.body)

    @property
    def last_json(self):
        return json.loads(self.requests[-1].content)


def _gemini(handler, api_key="test-key", config=None):
    http = httpx.Client(transport=httpx.MockTransport(handler))
    return GeminiClient(api_key=api_key, model="gemini-2.5-flash", config=config, http_client=http)


def _deepseek(handler, api_key="test-key"):
    http = httpx.Client(transport=httpx.MockTransport(handler))
    return DeepSeekClient(api_key=api_key, model="deepseek-chat", http_client=http)


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

class TestInputValidation:

    def test_empty_prompt_rejected(self):
        handler = Recorder(body=_gemini_body("x"))
        with pytest.raises(ValueError):
            _gemini(handler).generate("   ")
        assert handler.requests == []

    @pytest.mark.parametrize("temperature", [-0.1, 2.5])
    def test_temperature_out_of_range(self, temperature):
        handler = Recorder(body=_gemini_body("x"))
        with pytest.raises(ValueError):
            _gemini(handler).generate("prompt", temperature=temperature)

    @pytest.mark.parametrize("api_key", [None, "", "   "])
    def test_missing_key_raises_configuration_error(self, api_key):
        handler = Recorder(body=_gemini_body("x"))
        with pytest.raises(ConfigurationError, match="GEMINI_API_KEY"):
            _gemini(handler, api_key=api_key).generate("prompt")
        assert handler.requests == []

    def test_cancelled_token_stops_before_request(self):
        handler = Recorder(body=_gemini_body("x"))
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            _gemini(handler).generate("prompt", cancel=token)
        assert handler.requests == []


# ---------------------------------------------------------------------------
# Gemini request
# ---------------------------------------------------------------------------

class TestGeminiRequest:

    def test_url_and_key_query_parameter(self):
        handler = Recorder(body=_gemini_body("code"))
        _gemini(handler).generate("prompt")
        request = handler.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/v1beta/models/gemini-2.5-flash:generateContent"
        assert request.url.params["key"] == "test-key"

    def test_payload_shape(self):
        handler = Recorder(body=_gemini_body("code"))
        _gemini(handler).generate("write tests")
        payload = handler.last_json
        assert payload["contents"] == [{"role": "user", "parts": [{"text": "write tests"}]}]
        assert payload["generationConfig"] == {
            "temperature": 0.1,
            "maxOutputTokens": 8000,
            "topP": 0.8,
            "topK": 40,
        }
        assert len(payload["safetySettings"]) == 4
        assert all(s["threshold"] == "BLOCK_NONE" for s in payload["safetySettings"])
        assert "system_instruction" not in payload

    def test_system_instruction_and_temperature(self):
        handler = Recorder(body=_gemini_body("code"))
        _gemini(handler).generate("p", system_instruction="be terse", temperature=0.7)
        payload = handler.last_json
        assert payload["system_instruction"] == {"parts": [{"text": "be terse"}]}
        assert payload["generationConfig"]["temperature"] == 0.7

    def test_custom_base_url(self):
        handler = Recorder(body=_gemini_body("code"))
        config = LLMConfig(gemini_base_url="https://proxy.local/api/")
        _gemini(handler, config=config).generate("p")
        assert str(handler.requests[0].url).startswith(
            "https://proxy.local/api/models/gemini-2.5-flash:generateContent"
        )


# ---------------------------------------------------------------------------
# Gemini response parsing
# ---------------------------------------------------------------------------

class TestGeminiResponse:

    def test_returns_text(self):
        handler = Recorder(body=_gemini_body("class FooTest"))
        assert _gemini(handler).generate("p") == "class FooTest"

    def test_result_carries_usage(self):
        handler = Recorder(body=_gemini_body("class FooTest"))
        result = _gemini(handler).generate_result("p")
        assert result.prompt_tokens == 12
        assert result.output_tokens == 34
        assert result.finish_reason == "STOP"
        assert result.model == "gemini-2.5-flash"
        assert result.latency_ms >= 0

    def test_first_non_blank_part_wins(self):
        handler = Recorder(body=_gemini_body("", "   ", "second", "third"))
        assert _gemini(handler).generate("p") == "second"

    def test_later_candidate_used_when_first_is_empty(self):
        body = {
            "candidates": [
                {"content": {"parts": [{"text": ""}]}, "finishReason": "STOP"},
                {"content": {"parts": [{"text": "fallback"}]}, "finishReason": "STOP"},
            ]
        }
        assert _gemini(Recorder(body=body)).generate("p") == "fallback"

    def test_max_tokens_still_returns_text(self, caplog):
        handler = Recorder(body=_gemini_body("partial", finish_reason="MAX_TOKENS"))
        with caplog.at_level("WARNING", logger="testgen_agent.llm_client"):
            assert _gemini(handler).generate("p") == "partial"
        assert "MAX_TOKENS" in caplog.text

    @pytest.mark.parametrize("reason", ["SAFETY", "RECITATION"])
    def test_blocked_finish_reason(self, reason):
        body = {"candidates": [{"finishReason": reason}]}
        with pytest.raises(ContentBlockedError) as exc_info:
            _gemini(Recorder(body=body)).generate("p")
        assert exc_info.value.reason == reason

    def test_prompt_feedback_block(self):
        body = {"promptFeedback": {"blockReason": "SAFETY"}}
        with pytest.raises(ContentBlockedError):
            _gemini(Recorder(body=body)).generate("p")

    def test_error_object_in_place_of_candidates(self):
        body = {"error": {"code": 429, "message": "Resource exhausted"}}
        with pytest.raises(TransportError, match="Resource exhausted") as exc_info:
            _gemini(Recorder(body=body)).generate("p")
        assert exc_info.value.status_code == 429

    def test_no_candidates_is_malformed(self):
        with pytest.raises(MalformedResponseError):
            _gemini(Recorder(body={"candidates": []})).generate("p")

    def test_all_parts_blank_is_malformed(self):
        with pytest.raises(MalformedResponseError):
            _gemini(Recorder(body=_gemini_body("", "  "))).generate("p")

    def test_non_json_body_is_malformed(self):
        with pytest.raises(MalformedResponseError, match="Response preview"):
            _gemini(Recorder(raw="<html>gateway</html>")).generate("p")


# ---------------------------------------------------------------------------
# Transport failures
# ---------------------------------------------------------------------------

class TestTransport:

    def test_non_2xx_embeds_status_and_body(self):
        handler = Recorder(status=503, raw="backend unavailable")
        with pytest.raises(TransportError) as exc_info:
            _gemini(handler).generate("p")
        err = exc_info.value
        assert err.status_code == 503
        assert err.body == "backend unavailable"
        assert "503" in str(err)
        assert "backend unavailable" in str(err)

    def test_network_error(self):
        handler = Recorder(exc=httpx.ConnectError("connection refused"))
        with pytest.raises(TransportError, match="connection refused") as exc_info:
            _gemini(handler).generate("p")
        assert exc_info.value.status_code is None

    def test_exactly_one_request_per_call(self):
        handler = Recorder(status=500, raw="boom")
        with pytest.raises(TransportError):
            _gemini(handler).generate("p")
        assert len(handler.requests) == 1

    def test_read_timeout_clipped_to_deadline(self):
        client = _gemini(Recorder(body=_gemini_body("x")))
        timeout = client._timeout(CancellationToken(timeout=5))
        assert timeout.read <= 5
        assert timeout.connect <= 5

    def test_default_timeouts(self):
        client = _gemini(Recorder(body=_gemini_body("x")))
        timeout = client._timeout(None)
        assert timeout.read == 180.0
        assert timeout.connect == 20.0


# ---------------------------------------------------------------------------
# DeepSeek
# ---------------------------------------------------------------------------

class TestDeepSeek:

    def _body(self, content, finish_reason="stop"):
        return {
            "model": "deepseek-chat",
            "choices": [
                {"message": {"role": "assistant", "content": content}, "finish_reason": finish_reason}
            ],
            "usage": {"prompt_tokens": 5, "completion_tokens": 7},
        }

    def test_request_shape(self):
        handler = Recorder(body=self._body("code"))
        _deepseek(handler).generate("p", system_instruction="sys")
        request = handler.requests[0]
        assert request.url.path == "/chat/completions"
        assert request.headers["Authorization"] == "Bearer test-key"
        payload = handler.last_json
        assert payload["model"] == "deepseek-chat"
        assert payload["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "p"},
        ]

    def test_returns_content_and_usage(self):
        result = _deepseek(Recorder(body=self._body("class X"))).generate_result("p")
        assert result.raw_text == "class X"
        assert result.prompt_tokens == 5
        assert result.output_tokens == 7

    def test_content_filter(self):
        handler = Recorder(body=self._body("", finish_reason="content_filter"))
        with pytest.raises(ContentBlockedError):
            _deepseek(handler).generate("p")

    def test_error_object(self):
        handler = Recorder(body={"error": {"message": "Insufficient Balance"}})
        with pytest.raises(TransportError, match="Insufficient Balance"):
            _deepseek(handler).generate("p")

    def test_missing_key(self):
        with pytest.raises(ConfigurationError, match="DEEPSEEK_API_KEY"):
            _deepseek(Recorder(body=self._body("x")), api_key=None).generate("p")


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

class TestFactory:

    def test_gemini_by_default(self, test_config):
        client = create_llm_client(test_config)
        assert isinstance(client, GeminiClient)
        assert client.model == "gemini-2.5-flash"
        client.close()

    def test_deepseek_selected(self):
        config = AgentConfig(
            gemini_api_key=None,
            deepseek_api_key="ds-key",
            llm=LLMConfig(provider="deepseek", deepseek_model="deepseek-coder"),
        )
        with create_llm_client(config) as client:
            assert isinstance(client, DeepSeekClient)
            assert client.model == "deepseek-coder"
            assert client.api_key == "ds-key"

    def test_shared_http_client_not_closed(self, test_config):
        http = httpx.Client(transport=httpx.MockTransport(Recorder(body=_gemini_body("x"))))
        with create_llm_client(test_config, http_client=http):
            pass
        assert not http.is_closed
        http.close()


# ---------------------------------------------------------------------------
# Cancellation while the provider is still working
# ---------------------------------------------------------------------------

class _SlowServer(ThreadingHTTPServer):
    daemon_threads = True
    block_on_close = False


@pytest.fixture
def slow_server():
    """Local server that holds its response headers until released."""
    release = threading.Event()

    class Handler(BaseHTTPRequestHandler):
        def do_POST(self):
            self.rfile.read(int(self.headers.get("Content-Length", 0)))
            release.wait(10)
            payload = json.dumps(_gemini_body("late")).encode()
            self.send_response(200)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

        def log_message(self, *args):
            pass

    server = _SlowServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}/v1beta"
    release.set()
    server.shutdown()
    server.server_close()


def _live_gemini(base_url):
    return GeminiClient(
        api_key="test-key",
        model="gemini-2.5-flash",
        config=LLMConfig(gemini_base_url=base_url),
        http_client=httpx.Client(trust_env=False),
    )


class TestInFlightCancellation:

    def test_cancel_before_headers_returns_promptly(self, slow_server):
        token = CancellationToken()
        timer = threading.Timer(0.3, token.cancel)
        timer.start()
        start = time.monotonic()
        try:
            with pytest.raises(OperationCancelled):
                _live_gemini(slow_server).generate("hi", cancel=token)
        finally:
            timer.cancel()
        assert time.monotonic() - start < 3

    def test_deadline_before_headers(self, slow_server):
        token = CancellationToken(timeout=0.3)
        start = time.monotonic()
        with pytest.raises(OperationCancelled):
            _live_gemini(slow_server).generate("hi", cancel=token)
        assert time.monotonic() - start < 3

    def test_uncancelled_token_returns_body(self):
        handler = Recorder(body=_gemini_body("code"))
        assert _gemini(handler).generate("p", cancel=CancellationToken()) == "code"
        assert len(handler.requests) == 1

    def test_transport_error_raised_through_token_path(self):
        handler = Recorder(status=503, raw="busy")
        with pytest.raises(TransportError) as exc_info:
            _gemini(handler).generate("p", cancel=CancellationToken())
        assert exc_info.value.status_code == 503

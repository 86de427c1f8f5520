from __future__ import annotations

import httpx

from run_engine.core.errors import FrameworkError, LlmError, PersistenceFailure, UserError
from run_engine.core.run_errors import RunErrorKind, classify_run_exception


def _status_error(code: int, *, headers: dict | None = None, json_body: object = None) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://llm.example/v1/chat/completions")
    response = httpx.Response(code, headers=headers, json=json_body, request=request)
    return httpx.HTTPStatusError(f"HTTP {code}", request=request, response=response)


def test_rate_limit_with_retry_after() -> None:
    err = classify_run_exception(_status_error(429, headers={"Retry-After": "3"}, json_body={"error": {"message": "slow down"}}))
    assert err.error_kind is RunErrorKind.RATE_LIMITED
    assert err.retryable is True
    assert err.retry_after_ms == 3000
    assert err.message == "HTTP 429: slow down"
    assert err.to_payload() == {
        "error_kind": "rate_limited",
        "message": "HTTP 429: slow down",
        "retryable": True,
        "retry_after_ms": 3000,
        "details": {"status_code": 429},
    }


def test_http_status_kinds() -> None:
    assert classify_run_exception(_status_error(401)).error_kind is RunErrorKind.AUTH_ERROR
    assert classify_run_exception(_status_error(403)).error_kind is RunErrorKind.AUTH_ERROR
    server = classify_run_exception(_status_error(503))
    assert server.error_kind is RunErrorKind.SERVER_ERROR and server.retryable is True
    other = classify_run_exception(_status_error(404))
    assert other.error_kind is RunErrorKind.HTTP_ERROR and other.message == "HTTP 404"


def test_transport_errors_are_retryable_llm_errors() -> None:
    request = httpx.Request("POST", "https://llm.example/v1/chat/completions")
    timeout = classify_run_exception(httpx.ReadTimeout("timed out", request=request))
    assert timeout.error_kind is RunErrorKind.LLM_ERROR and timeout.details == {"kind": "timeout"}
    refused = classify_run_exception(httpx.ConnectError("refused", request=request))
    assert refused.error_kind is RunErrorKind.LLM_ERROR and refused.details == {"kind": "request_error"}


def test_engine_errors() -> None:
    framework = classify_run_exception(UserError("bad strategy", code="INVALID_TOOL_EXECUTION_STRATEGY"))
    assert framework.error_kind is RunErrorKind.CONFIG_ERROR
    assert framework.details["framework_code"] == "INVALID_TOOL_EXECUTION_STRATEGY"

    assert classify_run_exception(FrameworkError(code="X", message="y")).error_kind is RunErrorKind.CONFIG_ERROR
    assert classify_run_exception(LlmError("bad response")).error_kind is RunErrorKind.LLM_ERROR
    assert classify_run_exception(PersistenceFailure("db")).error_kind is RunErrorKind.PERSISTENCE_ERROR
    assert classify_run_exception(ValueError("mismatch")).error_kind is RunErrorKind.CONFIG_ERROR
    unknown = classify_run_exception(RuntimeError("???"))
    assert unknown.error_kind is RunErrorKind.UNKNOWN and unknown.to_payload()["retryable"] is False

"""Check executor: runs one probe against one target and interprets it.

Each check type maps to a request builder and a response interpreter via
lookup tables; the HTTP status override is applied on top of every type.
Probe failures never raise: timeouts and transport errors become ``fail``.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

import httpx

from .models import CheckType, HealthCheck, Result

logger = logging.getLogger(__name__)

# Body posted by form checks
FORM_TEST_PAYLOAD = {
    "first_name": "Site",
    "last_name": "Monitor",
    "email": "monitor@example.com",
    "message": "Automated health check",
}


@dataclass
class ProbeResult:
    """Outcome of a single probe execution."""

    result: Result
    latency_ms: float
    http_status: int | None = None
    error_message: str | None = None
    raw_payload: Any = None


@dataclass
class _Request:
    method: str
    json: dict[str, Any] | None = None


# ── Target resolution ────────────────────────────────────────────────────────


def resolve_target(target: str, primary_domain: str) -> str:
    """Prefix relative targets with the site's primary domain."""
    if urlparse(target).scheme in ("http", "https"):
        return target

    base = primary_domain.rstrip("/")
    if urlparse(base).scheme not in ("http", "https"):
        base = f"https://{base}"
    if target and not target.startswith("/"):
        target = "/" + target
    return base + target


# ── Request builders ─────────────────────────────────────────────────────────


def _get_request() -> _Request:
    return _Request(method="GET")


def _form_request() -> _Request:
    return _Request(method="POST", json=dict(FORM_TEST_PAYLOAD))


REQUEST_BUILDERS: dict[CheckType, Callable[[], _Request]] = {
    CheckType.FORM: _form_request,
}


# ── Response interpreters ────────────────────────────────────────────────────


def interpret_json_status(status_code: int, body: bytes, expected_status: int) -> tuple[Result, Any]:
    """Health endpoints report their own status in a JSON ``status`` field."""
    try:
        payload = json.loads(body)
    except ValueError:
        return (Result.OK if httpx.codes.is_success(status_code) else Result.FAIL), None

    result = Result.OK
    if isinstance(payload, dict):
        status = payload.get("status")
        if status == "error":
            result = Result.FAIL
        elif status == "degraded":
            result = Result.WARN
    return result, payload


def interpret_http_status(status_code: int, body: bytes, expected_status: int) -> tuple[Result, Any]:
    if not httpx.codes.is_success(status_code):
        return Result.FAIL, None
    if status_code != expected_status:
        return Result.WARN, None
    return Result.OK, None


INTERPRETERS: dict[CheckType, Callable[[int, bytes, int], tuple[Result, Any]]] = {
    CheckType.HEALTH_API: interpret_json_status,
    CheckType.CMS: interpret_json_status,
}


def apply_status_override(result: Result, status_code: int) -> Result:
    """Server errors always fail, client errors always warn."""
    if status_code >= 500:
        return Result.FAIL
    if status_code >= 400:
        return Result.WARN
    return result


# ── Executor ─────────────────────────────────────────────────────────────────


def _read_before(resp: httpx.Response, deadline: float) -> bytes:
    """Read the body, giving up once ``deadline`` (perf_counter) has passed.

    httpx timeouts bound each network operation, not the whole exchange.
    """
    chunks = []
    if time.perf_counter() > deadline:
        raise httpx.ReadTimeout("Overall deadline exceeded", request=resp.request)
    for chunk in resp.iter_bytes():
        chunks.append(chunk)
        if time.perf_counter() > deadline:
            raise httpx.ReadTimeout("Overall deadline exceeded", request=resp.request)
    return b"".join(chunks)


def run_probe(
    check_type: CheckType,
    url: str,
    timeout_ms: int = 10_000,
    expected_status: int = 200,
    transport: httpx.BaseTransport | None = None,
) -> ProbeResult:
    """Issue the request for ``check_type`` against ``url`` and interpret it."""
    request = REQUEST_BUILDERS.get(check_type, _get_request)()
    interpret = INTERPRETERS.get(check_type, interpret_http_status)

    t0 = time.perf_counter()
    deadline = t0 + timeout_ms / 1000
    try:
        with httpx.Client(
            timeout=timeout_ms / 1000, follow_redirects=True, transport=transport,
        ) as client:
            with client.stream(request.method, url, json=request.json) as resp:
                body = _read_before(resp, deadline)
            result, payload = interpret(resp.status_code, body, expected_status)
        latency = (time.perf_counter() - t0) * 1000

        return ProbeResult(
            result=apply_status_override(result, resp.status_code),
            latency_ms=round(latency, 1),
            http_status=resp.status_code,
            raw_payload=payload,
        )
    except httpx.TimeoutException:
        latency = (time.perf_counter() - t0) * 1000
        return ProbeResult(
            result=Result.FAIL, latency_ms=round(latency, 1),
            error_message=f"Request timed out after {timeout_ms}ms",
        )
    except Exception as e:
        latency = (time.perf_counter() - t0) * 1000
        return ProbeResult(
            result=Result.FAIL, latency_ms=round(latency, 1),
            error_message=str(e) or type(e).__name__,
        )


def execute_check(
    check: HealthCheck,
    primary_domain: str,
    transport: httpx.BaseTransport | None = None,
) -> ProbeResult:
    """Run a configured check against its site."""
    url = resolve_target(check.target, primary_domain)
    result = run_probe(
        check.check_type, url,
        timeout_ms=check.timeout_ms,
        expected_status=check.expected_status,
        transport=transport,
    )
    logger.debug(
        "Probe %s %s -> %s (%sms)",
        check.check_type.value, url, result.result.value, result.latency_ms,
    )
    return result

"""Retry/backoff wrapper around remote chat-completion calls.

Every call returns a ``CallResult``; nothing here raises to the caller. Retries
cover HTTP 429, HTTP 5xx, network errors and timeouts. Other 4xx responses are
returned immediately as failures.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import httpx

LOGGER = logging.getLogger(__name__)

OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"

# Backoff wait, patched out in tests.
_sleep = asyncio.sleep

_BEARER_RE = re.compile(r"\b(bearer)\s+[\w.~+/-]+", re.IGNORECASE)
_SECRET_RE = re.compile(
    r"\b(api[_-]?key|authorization|auth|token|bearer)[\"']?\s*[:=]\s*[\"']?[\w-]+", re.IGNORECASE
)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 2
    delays_s: Tuple[float, ...] = (0.8, 1.5)
    jitter: float = 0.3

    def delay_for(self, retry_number: int) -> float:
        """Backoff before retry ``retry_number`` (1-based), with positive jitter."""

        idx = min(max(retry_number, 1), len(self.delays_s)) - 1
        base = self.delays_s[idx]
        return base * (1.0 + random.uniform(0.0, self.jitter))


@dataclass
class CallResult:
    ok: bool
    attempts: int
    status_code: Optional[int] = None
    data: Optional[Dict[str, Any]] = None
    error: str = ""
    error_body: str = ""

    def describe(self) -> str:
        if self.status_code is not None:
            return f"http_{self.status_code}"
        return self.error or "unknown"


def sanitize_error_body(body: Any, limit: int = 400) -> str:
    """Truncate a provider body and mask token-like values before logging."""

    if not isinstance(body, str) or not body:
        return ""
    snippet = body[:limit].replace("\n", " ")
    snippet = _BEARER_RE.sub(lambda m: f"{m.group(1)} ***", snippet)
    return _SECRET_RE.sub(lambda m: f"{m.group(1)}=***", snippet)


def is_retryable_status(status: int) -> bool:
    return status == 429 or 500 <= status < 600


def message_content(data: Optional[Dict[str, Any]]) -> str:
    """Pull ``choices[0].message.content`` out of a chat-completion body."""

    if not isinstance(data, dict):
        return ""
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0] if isinstance(choices[0], dict) else {}
    message = first.get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, list):
        # Some providers return content parts instead of a plain string.
        content = "".join(
            str(part.get("text", "")) for part in content if isinstance(part, dict)
        )
    return str(content or "").strip()


async def post_json_with_retry(
    url: str,
    payload: Dict[str, Any],
    headers: Dict[str, str],
    *,
    timeout_s: float = 15.0,
    policy: Optional[RetryPolicy] = None,
    label: str = "remote",
) -> CallResult:
    policy = policy or RetryPolicy()
    total_attempts = policy.max_retries + 1
    last = CallResult(ok=False, attempts=0, error="not_attempted")

    async with httpx.AsyncClient(timeout=httpx.Timeout(timeout_s)) as client:
        for attempt in range(1, total_attempts + 1):
            try:
                resp = await asyncio.wait_for(
                    client.post(url, headers=headers, json=payload),
                    timeout=timeout_s,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException):
                LOGGER.warning("[%s] attempt=%d timeout after %.1fs", label, attempt, timeout_s)
                last = CallResult(ok=False, attempts=attempt, error="timeout")
            except httpx.RequestError as exc:
                LOGGER.warning(
                    "[%s] attempt=%d network_error=%s", label, attempt, exc.__class__.__name__
                )
                last = CallResult(ok=False, attempts=attempt, error="network")
            else:
                status = int(resp.status_code)
                if 200 <= status < 300:
                    try:
                        data = resp.json()
                    except ValueError:
                        LOGGER.warning("[%s] attempt=%d status=%d body_not_json", label, attempt, status)
                        return CallResult(
                            ok=False,
                            attempts=attempt,
                            status_code=status,
                            error="invalid_json",
                            error_body=sanitize_error_body(resp.text),
                        )
                    LOGGER.info("[%s] attempt=%d status=%d success", label, attempt, status)
                    return CallResult(
                        ok=True,
                        attempts=attempt,
                        status_code=status,
                        data=data if isinstance(data, dict) else {},
                    )

                body = sanitize_error_body(resp.text)
                LOGGER.warning("[%s] attempt=%d status=%d error_body=%s", label, attempt, status, body)
                last = CallResult(
                    ok=False,
                    attempts=attempt,
                    status_code=status,
                    error=f"HTTP {status}",
                    error_body=body,
                )
                if not is_retryable_status(status):
                    return last

            if attempt <= policy.max_retries:
                delay = policy.delay_for(attempt)
                LOGGER.info("[%s] retry %d/%d in %.2fs", label, attempt, policy.max_retries, delay)
                await _sleep(delay)

    LOGGER.warning("[%s] retries exhausted after %d attempts (%s)", label, last.attempts, last.describe())
    return last

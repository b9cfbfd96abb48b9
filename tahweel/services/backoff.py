"""Retry classification and exponential backoff for Google Drive calls.

Errors are classified from their structured fields only (HTTP status and the
Drive error `reason`), never from the rendered message. The tenacity retry
loops built here carry the per-call retry state; nothing survives the call.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from typing import Any, Awaitable, Callable

from googleapiclient.errors import HttpError  # type: ignore
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
)

from tahweel.utils.logging_utils import structured_log

_LOG = logging.getLogger("backoff")

_RETRYABLE_HTTP_STATUSES = frozenset({408, 429})
_RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded"})

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE = 1.5
DEFAULT_MAX_DELAY = 15.0
DEFAULT_JITTER = 1.0


def http_status_of(exc: BaseException) -> int | None:
    """Return the HTTP status carried by a Google API error, if any."""
    resp = getattr(exc, "resp", None)
    status = getattr(resp, "status", None) if resp is not None else None
    if status is None:
        status = getattr(exc, "status_code", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def error_reasons(exc: BaseException) -> set[str]:
    """Collect Drive error reasons (e.g. `rateLimitExceeded`) from an HttpError."""
    reasons: set[str] = set()
    details = getattr(exc, "error_details", None)
    if isinstance(details, list):
        for item in details:
            if isinstance(item, dict) and isinstance(item.get("reason"), str):
                reasons.add(item["reason"])
    content = getattr(exc, "content", None)
    if isinstance(content, (bytes, bytearray)) and content:
        try:
            payload = json.loads(content.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            payload = None
        error_info = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(error_info, dict):
            for item in error_info.get("errors") or []:
                if isinstance(item, dict) and isinstance(item.get("reason"), str):
                    reasons.add(item["reason"])
    return reasons


class BackoffPolicy:
    """Decides which failures are transient and how long to wait between attempts."""

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base: float = DEFAULT_BASE,
        max_delay: float = DEFAULT_MAX_DELAY,
        jitter: float = DEFAULT_JITTER,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
        async_sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if base < 1.0:
            raise ValueError("base must be >= 1.0 so delays never shrink")
        self.max_attempts = max_attempts
        self.base = base
        self.max_delay = max_delay
        self.jitter = max(0.0, jitter)
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._async_sleep = async_sleep

    @classmethod
    def from_config(cls, cfg: Any, **overrides: Any) -> "BackoffPolicy":
        params = {
            "max_attempts": cfg.max_attempts,
            "base": cfg.backoff_base,
            "max_delay": cfg.backoff_max_seconds,
        }
        params.update(overrides)
        return cls(**params)

    def should_retry(self, exc: BaseException) -> bool:
        if isinstance(exc, TimeoutError):
            return True
        if isinstance(exc, HttpError) or getattr(exc, "resp", None) is not None:
            status = http_status_of(exc)
            if status is None:
                return False
            if status in _RETRYABLE_HTTP_STATUSES or 500 <= status <= 599:
                return True
            if status == 403 and error_reasons(exc) & _RATE_LIMIT_REASONS:
                return True
        return False

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given 0-based failed attempt.

        The exponential term is capped at `max_delay - jitter` before jitter is
        added, so delays at the cap still spread over `[max_delay - jitter, max_delay]`.
        """
        spread = min(self.jitter, self.max_delay)
        exponential = min(self.base ** max(0, attempt), self.max_delay - spread)
        jitter = self._rng.uniform(0.0, spread) if spread else 0.0
        return exponential + jitter

    def _wait(self, retry_state: RetryCallState) -> float:
        return self.delay_for(retry_state.attempt_number - 1)

    def _before_sleep(self, operation: str) -> Callable[[RetryCallState], None]:
        def _log(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else None
            structured_log(
                _LOG,
                logging.WARNING,
                "drive_call_retry",
                stage=operation,
                attempt=retry_state.attempt_number,
                delay_seconds=round(delay, 2) if delay is not None else None,
                error_type=type(exc).__name__ if exc else None,
                status_code=http_status_of(exc) if exc else None,
            )

        return _log

    def retrying(self, *, operation: str = "drive_call") -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(self.should_retry),
            before_sleep=self._before_sleep(operation),
            sleep=self._sleep,
            reraise=True,
        )

    def async_retrying(self, *, operation: str = "drive_call") -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(self.should_retry),
            before_sleep=self._before_sleep(operation),
            sleep=self._async_sleep,
            reraise=True,
        )


__all__ = ["BackoffPolicy", "http_status_of", "error_reasons"]

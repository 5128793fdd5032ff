"""
Transport error classification, retry delays and the provider cooldown tracker.
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from config import LoopConfig, loop_config

logger = logging.getLogger(__name__)

RATE_LIMIT = "rate_limit"
CONTEXT_LENGTH = "context_length"
TRANSIENT = "transient"

_RATE_LIMIT_PATTERNS = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "tpm limit",
    "tokens per minute",
    "quota exceeded",
    "429",
    "overloaded",
    "capacity",
    "try again later",
    "resource exhausted",
    "throttl",
)

_CONTEXT_PATTERNS = (
    "context_length",
    "context length",
    "maximum context",
    "token limit",
    "too many tokens",
    "max_tokens",
    "input is too long",
)

_TRY_AGAIN_RE = re.compile(r"try again in (\d+(?:\.\d+)?)\s*(second|minute|sec|min|ms|millisecond)", re.I)


def _error_text(error: Any) -> str:
    if error is None:
        return ""
    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        text = message
    else:
        text = str(error)
    code = getattr(error, "error_code", None)
    if code:
        text = f"{code}: {text}"
    return text


def _status_of(error: Any) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def is_rate_limit_error(error: Any) -> bool:
    if error is None:
        return False
    if _status_of(error) == 429:
        return True
    lower = _error_text(error).lower()
    return any(p in lower for p in _RATE_LIMIT_PATTERNS)


def is_context_length_error(error: Any) -> bool:
    if error is None:
        return False
    lower = _error_text(error).lower()
    status = _status_of(error)
    if status is not None:
        lower = f"{lower} {status}"
    if any(p in lower for p in _CONTEXT_PATTERNS):
        return True
    return "400" in lower and ("token" in lower or "length" in lower)


def is_throttle_response(error: Any) -> bool:
    """A 429 status or a throttling error code reported by the provider itself."""
    if error is None:
        return False
    if _status_of(error) == 429:
        return True
    code = str(getattr(error, "error_code", None) or "").lower()
    return "throttl" in code


def classify_error(error: Any) -> str:
    """Bucket a transport error: ``rate_limit``, ``context_length`` or ``transient``.

    A provider throttle is a rate limit whatever its message says (Bedrock
    answers "Too many tokens, please wait..." with a ThrottlingException).
    Otherwise context overflow is checked before the rate-limit wording; a
    400 complaining about tokens is not something waiting will fix.
    """
    if is_throttle_response(error):
        return RATE_LIMIT
    if is_context_length_error(error):
        return CONTEXT_LENGTH
    if is_rate_limit_error(error):
        return RATE_LIMIT
    return TRANSIENT


def retry_delay_ms(attempt: int, cfg: LoopConfig = loop_config) -> int:
    """Backoff before the next non-rate-limit retry; attempt is 1-indexed."""
    attempt = max(1, attempt)
    delay = cfg.base_retry_delay_ms * (cfg.retry_multiplier ** (attempt - 1))
    return int(min(delay, cfg.max_retry_delay_ms))


def extract_retry_after_ms(error: Any, now_ms: Optional[float] = None) -> Optional[float]:
    """Provider-directed wait in ms, from headers, message text or an attribute."""
    headers: Dict[str, Any] = {}
    raw_headers = getattr(error, "headers", None)
    if isinstance(raw_headers, dict):
        headers = {str(k).lower(): v for k, v in raw_headers.items()}

    retry_after = headers.get("retry-after")
    if retry_after is not None:
        try:
            return int(str(retry_after).strip()) * 1000.0
        except ValueError:
            pass

    reset = headers.get("x-ratelimit-reset")
    if reset is not None:
        try:
            reset_ts = int(str(reset).strip())
            # epoch milliseconds vs relative seconds
            if reset_ts > 1_000_000_000_000:
                now_ms = time.time() * 1000 if now_ms is None else now_ms
                return max(0.0, reset_ts - now_ms)
            return reset_ts * 1000.0
        except ValueError:
            pass

    m = _TRY_AGAIN_RE.search(_error_text(error))
    if m:
        value = float(m.group(1))
        unit = m.group(2).lower()
        if unit.startswith("min"):
            return value * 60_000
        if unit.startswith("ms") or unit.startswith("milli"):
            return value
        return value * 1000

    attr = getattr(error, "retry_after_ms", None)
    if attr:
        return float(attr)
    attr = getattr(error, "retry_after", None)
    if attr:
        try:
            value = int(attr)
        except (TypeError, ValueError):
            return None
        return float(value) if value > 1000 else value * 1000.0
    return None


@dataclass
class _Cooldown:
    wait_until_ms: float
    wait_ms: float


class RateLimiter:
    """Reactive per-provider cooldown: never waits up front, only after a 429."""

    def __init__(self, cfg: LoopConfig = loop_config, clock: Callable[[], float] = time.monotonic):
        self._cfg = cfg
        self._clock = clock
        self._consecutive: Dict[str, int] = {}
        self._cooldowns: Dict[str, _Cooldown] = {}

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def wait_time_ms(self, provider: str) -> float:
        cd = self._cooldowns.get(provider)
        if cd is None:
            return 0.0
        remaining = cd.wait_until_ms - self._now_ms()
        if remaining <= 0:
            return 0.0
        logger.debug(f"Provider {provider} in cooldown, {remaining / 1000:.1f}s left")
        return remaining

    def record_success(self, provider: str) -> None:
        self._consecutive[provider] = 0
        self._cooldowns.pop(provider, None)

    def record_rate_limit(self, provider: str, retry_after_ms: Optional[float] = None) -> float:
        current = self._consecutive.get(provider, 0)
        self._consecutive[provider] = current + 1
        if retry_after_ms and retry_after_ms > 0:
            wait = float(retry_after_ms)
            logger.info(f"Rate limited by {provider}, provider asked for {wait / 1000:.1f}s")
        else:
            wait = min(
                self._cfg.rate_limit_base_backoff_ms * (self._cfg.retry_multiplier ** current),
                self._cfg.rate_limit_max_backoff_ms,
            )
            logger.info(f"Rate limited by {provider} (hit {current + 1}), backing off {wait / 1000:.1f}s")
        self._cooldowns[provider] = _Cooldown(wait_until_ms=self._now_ms() + wait, wait_ms=wait)
        return wait

    def handle_rate_limit_error(self, provider: str, error: Any) -> float:
        """Record a rate-limit hit and return how long to wait (ms)."""
        return self.record_rate_limit(provider, extract_retry_after_ms(error))

    def consecutive_errors(self, provider: str) -> int:
        return self._consecutive.get(provider, 0)

    def reset(self, provider: str) -> None:
        self._consecutive.pop(provider, None)
        self._cooldowns.pop(provider, None)

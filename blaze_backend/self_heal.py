from __future__ import annotations

import logging
import re
from typing import Awaitable, Callable

from .config import DEFAULT_APPLY_MAX_ATTEMPTS
from .tags import extract_actionable_tags
from .types import ApplyAttempt, ApplyResult, ApplyStrategy, SelfHealingResult

logger = logging.getLogger(__name__)

ApplyFunction = Callable[[str], Awaitable[ApplyResult]]

MAX_APPLY_ATTEMPTS = DEFAULT_APPLY_MAX_ATTEMPTS

RETRYABLE_APPLY_ERROR_PATTERNS = tuple(
    re.compile(pattern, flags=re.IGNORECASE)
    for pattern in (
        r"index\.lock",
        r"cannot lock ref",
        r"another git process",
        r"\bEBUSY\b",
        r"\bEAGAIN\b",
        r"\bENOTEMPTY\b",
        r"resource busy",
        r"temporarily unavailable",
        r"timed out",
        r"timeout",
    )
)


def is_retryable_apply_error(error: str | None) -> bool:
    if not error:
        return False
    return any(pattern.search(error) for pattern in RETRYABLE_APPLY_ERROR_PATTERNS)


def _choose_retry(current_payload: str, raw_response: str, error: str | None) -> tuple[ApplyStrategy, str] | None:
    narrowed = extract_actionable_tags(raw_response)
    if narrowed and narrowed != current_payload:
        return "retry-actionable-tags", narrowed
    if is_retryable_apply_error(error):
        return "retry-same-payload", current_payload
    return None


async def apply_with_self_healing(
    raw_response: str,
    apply_response: ApplyFunction,
    *,
    max_attempts: int = MAX_APPLY_ATTEMPTS,
) -> SelfHealingResult:
    """Apply a response, retrying once with a narrower or identical payload when that can help.

    The first retry prefers the response reduced to its actionable tags; when
    narrowing changes nothing, a transient-looking error retries the same
    payload. Any other failure is final. Cancellation from ``apply_response``
    propagates untouched.
    """
    payload = raw_response.strip()
    result = await apply_response(payload)
    attempts = [ApplyAttempt(strategy="initial", payload=payload, error=result.error)]

    while result.error and len(attempts) < max_attempts:
        retry = _choose_retry(payload, raw_response, result.error)
        if retry is None:
            logger.info("Apply failure is not recoverable error=%s", result.error)
            break
        strategy, payload = retry
        logger.info("Retrying apply strategy=%s attempt=%s previous_error=%s", strategy, len(attempts) + 1, result.error)
        result = await apply_response(payload)
        attempts.append(ApplyAttempt(strategy=strategy, payload=payload, error=result.error))

    recovered = len(attempts) > 1 and not result.error
    return SelfHealingResult(result=result, attempts=attempts, recovered_by_self_healing=recovered)

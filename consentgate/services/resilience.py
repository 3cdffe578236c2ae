from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from consentgate.core.config import get_settings
from consentgate.core.errors import BackendTransientError
from consentgate.providers.provisioning.base import BackendOutcome, OutcomeKind
from consentgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, asyncio.TimeoutError, OSError, BackendTransientError)


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize external retry behavior for deterministic policy changes.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


def provision_retry_policy() -> RetryPolicy:
    # The creation driver bounds backend retries with its own attempt budget.
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.provision_max_retries,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    counter: str = "external_retries_total",
) -> Any:
    # Retry helper with jittered backoff for transient failures only.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            # Track retry volume so operators can detect retry storms.
            increment_counter(counter)
            logger.info("retry_scheduled attempt=%s error=%s", attempt, exc.__class__.__name__)
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            await asyncio.sleep(sleep_s)
            attempt += 1


async def call_with_retry(
    func: Callable[[], Awaitable[BackendOutcome]],
    *,
    policy: RetryPolicy | None = None,
    operation: str = "backend",
) -> BackendOutcome:
    """Run a backend call, retrying TRANSIENT outcomes with bounded backoff.

    Always returns an outcome: exhausted retries come back as TRANSIENT and any
    unexpected exception as FATAL, so callers branch on the kind.
    """

    async def _attempt() -> BackendOutcome:
        outcome = await func()
        if outcome.kind == OutcomeKind.TRANSIENT:
            raise BackendTransientError(outcome.message)
        return outcome

    try:
        return await retry_async(_attempt, policy=policy, counter="backend_retries_total")
    except BackendTransientError as exc:
        return BackendOutcome(OutcomeKind.TRANSIENT, str(exc) or "transient backend failure")
    except (TimeoutError, asyncio.TimeoutError):
        return BackendOutcome(OutcomeKind.TRANSIENT, f"{operation} timed out")
    except Exception as exc:  # noqa: BLE001 - surfaced as a FATAL outcome for the caller to record
        logger.warning("backend_call_failed operation=%s", operation, exc_info=exc)
        return BackendOutcome(OutcomeKind.FATAL, f"{exc.__class__.__name__}: {exc}")

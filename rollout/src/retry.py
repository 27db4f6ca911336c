from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TypeVar

from rollout.src.config import RetryPolicy
from rollout.src.context import OperationContext
from rollout.src.errors import CancelledError, RolloutError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def _is_retryable(exc: Exception) -> bool:
    return isinstance(exc, RolloutError) and exc.retryable


def retry(
    ctx: OperationContext,
    attempts: int,
    period_seconds: float,
    action: Callable[[], T],
    *,
    defaults: RetryPolicy | None = None,
    on_attempt: Callable[[int], None] | None = None,
) -> T:
    """Call *action* until it returns, fails permanently, or the budget runs out.

    Zero ``attempts`` / ``period_seconds`` are replaced with ``defaults``
    (the module constants when not given).  The sleep between attempts is
    pre-empted by cancellation; a cancelled context raises
    :class:`CancelledError` chained to the last failure without calling
    *action* again.

    Only :class:`RolloutError` subclasses marked ``retryable`` (convergence
    mismatches) lead to another attempt.  Anything else, remote failures
    included, is raised immediately.  Once the budget is exhausted the last
    failure is raised as-is.
    """
    policy = RetryPolicy(attempts=attempts, period_seconds=period_seconds).resolved(defaults)

    attempt = 0
    while True:
        attempt += 1
        if on_attempt is not None:
            on_attempt(attempt)
        try:
            return action()
        except Exception as exc:
            if not _is_retryable(exc) or attempt >= policy.attempts:
                raise
            last_error = exc
            LOGGER.debug(
                "attempt %d/%d failed: %s; retry in %.2fs",
                attempt,
                policy.attempts,
                exc,
                policy.period_seconds,
            )
        if ctx.wait(policy.period_seconds):
            cancelled = ctx.error() or CancelledError("operation cancelled")
            raise cancelled from last_error

"""
Retry policy shared by every action call.

One object decides whether an error is worth another attempt and how long to
wait before it; call sites wrap their coroutine with ``RetryPolicy.run``
instead of writing their own backoff loop.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from config.settings import Settings
from connectors.errors import RemoteServiceError, RetriesExhausted, TransientServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def is_retryable_status(status_code: int) -> bool:
    """429 and every 5xx."""
    return status_code == 429 or 500 <= status_code <= 599


@dataclass
class RetryOutcome(Generic[T]):
    result: T
    attempts: int

    @property
    def retries(self) -> int:
        return self.attempts - 1


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff: ``base_delay * 2**attempt`` capped at ``max_delay``.

    ``max_retries`` counts attempts *after* the first, so the default of 3
    allows at most four requests.  A ``Retry-After`` hint on the error
    replaces the computed delay.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    retryable_status: Callable[[int], bool] = field(default=is_retryable_status)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.default_max_retries,
            base_delay=settings.default_base_delay,
            max_delay=settings.default_max_delay,
        )

    @classmethod
    def disabled(cls) -> "RetryPolicy":
        return cls(max_retries=0)

    def should_retry(self, exc: BaseException) -> bool:
        return isinstance(exc, RemoteServiceError) and self.retryable_status(exc.status_code)

    def delay_for(self, attempt: int, exc: Optional[BaseException] = None) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (0-based)."""
        hint = getattr(exc, "retry_after", None)
        if hint is not None:
            return float(hint)
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        label: str = "operation",
        sleep: Sleep = asyncio.sleep,
    ) -> RetryOutcome[T]:
        """
        Await ``operation()`` until it succeeds or the policy gives up.

        Attempts run strictly one after another.  Non-retryable errors
        propagate on the spot; a transient error on the final attempt is
        re-raised as ``RetriesExhausted`` carrying the attempt count.
        """
        for attempt in range(self.max_retries + 1):
            try:
                result = await operation()
                return RetryOutcome(result=result, attempts=attempt + 1)
            except RemoteServiceError as exc:
                if not self.should_retry(exc):
                    raise
                if attempt >= self.max_retries:
                    if self.max_retries == 0:
                        raise
                    logger.warning(
                        "%s failed with HTTP %d on attempt %d/%d — giving up",
                        label,
                        exc.status_code,
                        attempt + 1,
                        self.max_retries + 1,
                    )
                    last = exc if isinstance(exc, TransientServiceError) else TransientServiceError(
                        str(exc), status_code=exc.status_code, payload=exc.payload,
                    )
                    raise RetriesExhausted(last, attempts=attempt + 1) from exc

                delay = self.delay_for(attempt, exc)
                logger.info(
                    "%s failed with HTTP %d on attempt %d/%d — retrying in %.2fs",
                    label,
                    exc.status_code,
                    attempt + 1,
                    self.max_retries + 1,
                    delay,
                )
                await sleep(delay)

        raise RuntimeError("unreachable")  # pragma: no cover

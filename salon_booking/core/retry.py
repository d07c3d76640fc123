import asyncio
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

import structlog
from sqlalchemy.exc import InterfaceError, OperationalError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (OperationalError, InterfaceError)


def exponential_backoff(base_seconds: float, factor: float = 2.0) -> Callable[[int], float]:
    """Return a backoff function: base, base*factor, base*factor**2, ..."""

    def backoff(attempt: int) -> float:
        return base_seconds * (factor ** (attempt - 1))

    return backoff


class RetryPolicy:
    """Retry policy shared by every transactional store call.

    Only infrastructure errors listed in ``retry_on`` are retried; domain errors
    always propagate on the first occurrence.
    """

    def __init__(
        self,
        max_attempts: int = 1,
        backoff: Optional[Callable[[int], float]] = None,
        retry_on: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff = backoff or (lambda attempt: 0.0)
        self.retry_on = retry_on
        self._sleep = sleep

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        """Policy for write operations, which the engine never replays."""
        return cls(max_attempts=1)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str = "operation",
        on_retry: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> T:
        """Run ``operation``; ``on_retry`` resets shared state (e.g. a session rollback)."""
        attempt = 1
        while True:
            try:
                return await operation()
            except self.retry_on as e:
                if attempt >= self.max_attempts:
                    logger.error(
                        "Giving up after transient failures",
                        operation=name,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise
                delay = self.backoff(attempt)
                logger.warning(
                    "Transient failure, retrying",
                    operation=name,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=str(e),
                )
                await self._sleep(delay)
                if on_retry is not None:
                    await on_retry()
                attempt += 1

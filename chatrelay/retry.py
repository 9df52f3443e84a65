"""
Bounded exponential backoff for gateway submissions.

The scheduler is a plain loop with an attempt counter; each delay goes
through an awaitable sleep, so cancelling the caller's task abandons the
sequence at the next suspension point.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from chatrelay.metrics import record_gateway_retry

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0


class RetryScheduler:
    """
    Retry an async action while its failures are classified retryable.

    With the defaults an action is attempted at most 4 times, waiting
    1, 2 and 4 seconds between attempts. When the budget runs out the
    last failure is re-raised unchanged.
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep

    def delay_for(self, retry_index: int) -> float:
        """Delay before retry number `retry_index` (0-based)."""
        return self.base_delay * (2 ** retry_index)

    async def run(
        self,
        action: Callable[[], Awaitable[Any]],
        is_retryable: Callable[[Exception], bool],
        on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    ) -> Any:
        """
        Run `action` until it succeeds, fails permanently, or retries run out.

        Args:
            action: Zero-argument coroutine factory, called once per attempt
            is_retryable: Classifies a failure as worth another attempt
            on_retry: Called with (retry number, error, delay) before each wait

        Returns:
            The action's result.

        Raises:
            The last exception raised by `action`.
        """
        retries = 0
        while True:
            try:
                return await action()
            except Exception as error:
                if not is_retryable(error):
                    logger.info(f"Non-retryable failure, giving up: {error}")
                    raise
                if retries >= self.max_retries:
                    logger.warning(f"Retry budget exhausted after {retries + 1} attempts: {error}")
                    raise

                delay = self.delay_for(retries)
                retries += 1
                record_gateway_retry(error)
                if on_retry is not None:
                    on_retry(retries, error, delay)
                logger.info(f"Retrying in {delay}s (retry {retries}/{self.max_retries}): {error}")
                await self._sleep(delay)

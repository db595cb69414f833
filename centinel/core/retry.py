import asyncio
from typing import Awaitable, Callable
from centinel.core.logger import logger


async def start_with_retry(start: Callable[[], Awaitable[None]], name: str,
                           min_delay: float = 1.0, max_delay: float = 30.0) -> int:
    """
    Await `start()` until it succeeds, doubling the pause between attempts.
    Returns the number of attempts. Cancel the calling task to give up.
    """
    delay = min_delay
    attempt = 0
    while True:
        attempt += 1
        try:
            await start()
        except Exception as e:
            logger.error(f"{name} could not start: {e}. Retrying in {delay}s...", extra={"attempt": attempt})
            await asyncio.sleep(delay)
            delay = min(delay * 2, max_delay) # Backoff
            continue

        if attempt > 1:
            logger.info(f"{name} started after {attempt} attempts")
        return attempt

import asyncio
import logging

from sqlalchemy.exc import InterfaceError, OperationalError

import config

logger = logging.getLogger(__name__)

# Errors worth another attempt. IntegrityError and validation errors are not.
TRANSIENT_ERRORS = (OperationalError, InterfaceError, OSError, ConnectionError, TimeoutError)


async def with_retry(operation, what: str = "operation", attempts: int = None,
                     delay: float = None, retry_on=TRANSIENT_ERRORS):
    """Await ``operation()`` up to ``attempts`` times with a fixed delay between tries."""
    attempts = attempts or config.STORE_RETRY_ATTEMPTS
    delay = config.STORE_RETRY_DELAY if delay is None else delay

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt >= attempts:
                logger.error(f"{what} failed after {attempts} attempts: {e}")
                raise
            logger.warning(f"{what} failed (attempt {attempt}/{attempts}): {e}. Retrying in {delay}s")
            await asyncio.sleep(delay)

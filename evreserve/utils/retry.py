"""Exponential backoff for transient store failures"""

import logging
import time
from typing import Callable, TypeVar

from ..errors import StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_with_backoff(
    func: Callable[[], T],
    max_retries: int = 3,
    retry_delay: float = 0.5,
    retry_on: tuple = (StoreUnavailable,),
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``func`` until it succeeds or ``max_retries`` attempts have failed with one of
    ``retry_on``. The last failure is re-raised.
    """
    for attempt in range(max_retries):
        try:
            return func()
        except retry_on as e:
            if attempt == max_retries - 1:
                logger.error(f"❌ All {max_retries} attempts failed for {description}: {e}")
                raise
            logger.warning(f"🔄 Retry {attempt + 1}/{max_retries} for {description}: {e}")
            sleep(retry_delay * (2**attempt))
    raise ValueError("max_retries must be at least 1")

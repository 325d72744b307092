from functools import wraps
from typing import Callable, Optional
import logging
import random
import time

import requests

from labflow import config
from labflow.errors import LabflowError

logger = logging.getLogger(__name__)


def is_transient(exc: BaseException) -> bool:
    """Only store timeouts, dropped connections and 5xx answers are worth another try."""
    if isinstance(exc, LabflowError):
        return exc.retryable
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(exc, requests.HTTPError):
        response = exc.response
        return response is not None and response.status_code >= 500
    return False


def backoff_delay(attempt: int, base_delay: float, multiplier: float, max_delay: float, jitter: bool, rand: Callable[[], float] = random.random) -> float:
    delay = min(max_delay, base_delay * (multiplier ** (attempt - 1)))
    if jitter:
        # equal jitter: somewhere in [delay/2, delay]
        delay = delay / 2 + rand() * delay / 2
    return delay


def retry_policy(
    max_attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    multiplier: Optional[float] = None,
    max_delay: Optional[float] = None,
    jitter: bool = True,
    sleep: Callable[[float], None] = time.sleep,
    rand: Callable[[], float] = random.random,
    retry_on: Callable[[BaseException], bool] = is_transient,
):
    """Decorator retrying transient failures with exponential backoff.

    Business refusals (conflicts, guards, validation, authorization, not found)
    are raised on the first attempt.
    """
    attempts = max_attempts or config.RETRY_MAX_ATTEMPTS
    base = config.RETRY_BASE_DELAY if base_delay is None else base_delay
    factor = multiplier or config.RETRY_MULTIPLIER
    cap = config.RETRY_MAX_DELAY if max_delay is None else max_delay

    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            for attempt in range(1, attempts + 1):
                try:
                    return fn(*args, **kwargs)
                except Exception as e:
                    if attempt >= attempts or not retry_on(e):
                        raise
                    delay = backoff_delay(attempt, base, factor, cap, jitter, rand)
                    logger.warning("Attempt %s/%s of %s failed: %s; retrying in %.2fs", attempt, attempts, fn.__name__, e, delay)
                    sleep(delay)

        return wrapper

    return decorator

"""일시적 MongoDB 오류에 대한 재시도 유틸.

동시 쓰기 충돌, 네트워크 단절, 레플리카 선출 중 오류만 재시도한다.
DuplicateKeyError 같은 결정적 오류는 호출자가 의미를 해석해야 하므로 그대로 올린다.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, TypeVar

from pymongo.errors import (
    AutoReconnect,
    ConnectionFailure,
    DuplicateKeyError,
    NetworkTimeout,
    OperationFailure,
    PyMongoError,
    WTimeoutError,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 0.05
DEFAULT_MAX_DELAY_SECONDS = 1.0

# WriteConflict(112), Interrupted(11601), CursorNotFound(43)
_RETRYABLE_CODES = frozenset({11601, 43, 112})


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, DuplicateKeyError):
        return False
    if isinstance(exc, (AutoReconnect, ConnectionFailure, NetworkTimeout, WTimeoutError)):
        return True
    if isinstance(exc, PyMongoError) and (
        exc.has_error_label("TransientTransactionError")
        or exc.has_error_label("RetryableWriteError")
    ):
        return True
    if isinstance(exc, OperationFailure) and exc.code in _RETRYABLE_CODES:
        return True
    return False


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """지수 백오프 + 0~50% 지터, max_delay 로 상한."""

    delay = base_delay * (2**attempt)
    jitter = random.random() * 0.5 * delay
    return min(delay + jitter, max_delay)


def with_retry(
    fn: Callable[[], T],
    *,
    operation: str,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """fn 을 실행하고, 재시도 가능한 오류면 최대 max_attempts 번까지 다시 시도한다."""

    attempt = 0
    while True:
        try:
            return fn()
        except PyMongoError as exc:
            attempt += 1
            if not is_retryable_error(exc) or attempt >= max_attempts:
                if attempt > 1:
                    logger.error(
                        "%s failed after %d attempts: %s", operation, attempt, exc
                    )
                raise

            delay = backoff_delay(attempt - 1, base_delay, max_delay)
            logger.warning(
                "%s failed with retryable error, retrying (attempt %d/%d, delay=%.3fs): %s",
                operation,
                attempt,
                max_attempts,
                delay,
                exc,
            )
            sleep(delay)

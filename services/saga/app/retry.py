"""
Saga Service — リトライポリシー

一時的な失敗 (CollaboratorError) を、同じ冪等キーのまま指数バックオフで再試行する。
回数と経過時間の両方で打ち切り、最後の例外をそのまま送出する。
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from .errors import CollaboratorError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    min_wait: float = 0.2
    max_wait: float = 2.0
    multiplier: float = 2.0
    deadline: float = 10.0


async def call_with_retry(
    policy: RetryPolicy,
    func: Callable[..., Awaitable[T]],
    *args: Any,
    retry_on: tuple[type[Exception], ...] = (CollaboratorError,),
    **kwargs: Any,
) -> T:
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts) | stop_after_delay(policy.deadline),
        wait=wait_exponential(
            multiplier=policy.multiplier, min=policy.min_wait, max=policy.max_wait
        ),
        retry=retry_if_exception_type(retry_on),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    ):
        with attempt:
            return await func(*args, **kwargs)

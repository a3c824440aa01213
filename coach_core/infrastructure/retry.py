"""Provider 调用的有界指数退避重试。

with_retry(fn, max_attempts, base_delay_ms, on_retry):
- 第 attempt 次失败后，如果错误是暂时性的且还有剩余次数，
  等待 base_delay_ms * 2 ** (attempt - 1) 毫秒再重试（不加抖动）。
- 否则原样抛出最后一次的错误。
- on_retry(attempt, delay_ms, error) 只用于观测，它抛出的异常会被记录并忽略。
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from coach_core.config.settings import settings
from coach_core.infrastructure.logging.logger import log_event


T = TypeVar("T")

OnRetry = Callable[[int, int, BaseException], object]

# 旧版 Provider 错误没有 is_transient 标记时，按消息内容判断
_TRANSIENT_MARKERS = ("503", "overloaded", "unavailable")


def is_transient(error: BaseException) -> bool:
    flag = getattr(error, "is_transient", None)
    if isinstance(flag, bool):
        return flag
    text = str(error).lower()
    return any(marker in text for marker in _TRANSIENT_MARKERS)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay_ms: int = 2000,
    on_retry: Optional[OnRetry] = None,
    *,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as e:
            if attempt >= max_attempts or not is_transient(e):
                raise
            delay_ms = base_delay_ms * 2 ** (attempt - 1)
            log_event(
                logging.WARNING,
                "Transient provider error, retrying",
                attempt=attempt,
                delay_ms=delay_ms,
                error=str(e),
            )
            if on_retry is not None:
                try:
                    result = on_retry(attempt, delay_ms, e)
                    if inspect.isawaitable(result):
                        await result
                except Exception as cb_err:
                    log_event(logging.ERROR, "on_retry callback failed", attempt=attempt, error=str(cb_err))
            await sleep(delay_ms / 1000)
            attempt += 1


@dataclass(frozen=True)
class RetryPolicy:
    """可注入的重试策略，默认值来自配置（3 次，2000ms 起）。"""

    max_attempts: int = settings.retry_max_attempts
    base_delay_ms: int = settings.retry_base_delay_ms

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        on_retry: Optional[OnRetry] = None,
        *,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> T:
        return await with_retry(fn, self.max_attempts, self.base_delay_ms, on_retry, sleep=sleep)

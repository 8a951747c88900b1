from __future__ import annotations

import concurrent.futures
import random
import time
import traceback
from typing import Any, Callable, Optional, Tuple, Type, TypeVar


T = TypeVar("T")


class CallTimeoutError(TimeoutError):
    """外部能力调用超过时限。"""


def backoff_delay(attempt: int, base_sleep_s: float, max_sleep_s: float) -> float:
    # 指数退避 + 0.7~1.3 抖动
    sleep_s = min(max_sleep_s, base_sleep_s * (2 ** (attempt - 1)))
    return sleep_s * (0.7 + random.random() * 0.6)


def call_with_timeout(fn: Callable[[], T], timeout_s: Optional[float]) -> T:
    """
    在单独线程里执行 fn，超过 timeout_s 抛 CallTimeoutError。
    超时后不等待后台线程（它的结果会被丢弃）。
    """
    if not timeout_s or timeout_s <= 0:
        return fn()
    pool = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="capability-call")
    try:
        future = pool.submit(fn)
        try:
            return future.result(timeout=timeout_s)
        except concurrent.futures.TimeoutError as e:
            future.cancel()
            raise CallTimeoutError(f"call exceeded {timeout_s:.1f}s") from e
    finally:
        pool.shutdown(wait=False)


def call_with_retry(
    fn: Callable[[], T],
    *,
    max_attempts: int = 3,
    base_sleep_s: float = 1.0,
    max_sleep_s: float = 12.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    logger: Any = None,
    node: str = "call",
    chunk_index: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    对外部能力调用做重试：
    - 只重试 retry_on 中的异常
    - 指数退避 + 少量随机抖动
    - 失败会抛出最后一次异常（由上层决定降级还是中止）
    """
    attempts = max(1, int(max_attempts))
    base = max(0.0, float(base_sleep_s))

    for i in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as e:
            if logger:
                logger.event(
                    "call_error",
                    node=node,
                    chunk_index=chunk_index,
                    attempt=i,
                    max_attempts=attempts,
                    error_type=e.__class__.__name__,
                    error=str(e),
                    traceback="".join(traceback.format_exception(type(e), e, e.__traceback__))[:8000],
                )
            if i >= attempts:
                raise
            delay = backoff_delay(i, base, max_sleep_s)
            if delay > 0:
                sleep(delay)

    raise RuntimeError("call_with_retry: unexpected state")

# -*- coding: utf-8 -*-
"""
有界并发执行器 + 指数退避重试。

各阶段都通过 run_bounded 处理包列表：用信号量限制同时在跑的任务数，
单个任务失败不影响其它任务；cancel 事件置位后不再派发新任务，已在跑的任务跑完为止。
"""

import asyncio
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple, Type, TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def run_bounded(
    items: Iterable[T],
    fn: Callable[[T], Awaitable[R]],
    concurrency: int,
    cancel: Optional[asyncio.Event] = None,
    raise_errors: bool = False,
) -> List:
    """
    对 items 中每一项执行 fn，同时在跑的不超过 concurrency 个。
    返回结果按完成顺序排列（不保证与输入顺序一致）；fn 抛出的异常作为异常对象放进结果，
    raise_errors=True 时全部跑完后再抛出第一个异常。
    """
    semaphore = asyncio.Semaphore(max(1, int(concurrency)))
    results: List = []
    errors: List[BaseException] = []

    async def worker(item):
        async with semaphore:
            if cancel is not None and cancel.is_set():
                return
            try:
                results.append(await fn(item))
            except Exception as e:
                errors.append(e)
                results.append(e)

    await asyncio.gather(*(worker(item) for item in items))
    if raise_errors and errors:
        raise errors[0]
    return results


async def retry_async(
    fn: Callable[[], Awaitable[R]],
    retries: int = 3,
    base_delay: float = 1.0,
    backoff_factor: float = 2.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> R:
    """最多重试 retries 次（总共 retries + 1 次尝试），等待时间 base, base*f, base*f^2 ...；全部失败抛出最后一次的异常。"""
    delay = base_delay
    attempt = 0
    while True:
        try:
            return await fn()
        except retry_on as e:
            if attempt >= retries:
                raise
            attempt += 1
            if on_retry is not None:
                on_retry(attempt, e, delay)
            await sleep(delay)
            delay *= backoff_factor

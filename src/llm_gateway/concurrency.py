"""
Async concurrency helpers.

The gateway runs on one event loop; blocking filesystem work (the session
file) goes through a small dedicated thread pool.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, TypeVar

T = TypeVar("T")

# Session writes are serialized by the store's lock; two workers leave room for reads.
_EXECUTOR = ThreadPoolExecutor(max_workers=2, thread_name_prefix="llm-gateway-io")


async def run_sync(func: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
    """
    Run a synchronous callable in the gateway's thread pool.

    The concurrent future is polled instead of awaited through
    ``loop.run_in_executor`` so a lost cross-thread wakeup cannot hang the
    caller. Cancelling the awaiting task cancels the future if it has not
    started yet; a write already in progress runs to completion.
    """
    future = _EXECUTOR.submit(partial(func, *args, **kwargs))
    try:
        while True:
            if future.done():
                return future.result()
            await asyncio.sleep(0.001)
    except asyncio.CancelledError:
        future.cancel()
        raise


__all__ = ["run_sync"]

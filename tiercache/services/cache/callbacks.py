"""
Invocation of caller-supplied loaders and writers.
"""

import asyncio
import inspect
from typing import Any, Callable, Optional


async def invoke(func: Callable[..., Any], *args: Any, timeout: Optional[float] = None) -> Any:
    """Execute a loader or writer (sync or async).

    Sync callables run in a worker thread so a blocking origin call never
    stalls the event loop.
    """
    if inspect.iscoroutinefunction(func):
        call = func(*args)
    else:
        call = _run_sync(func, *args)
    if timeout is None:
        return await call
    return await asyncio.wait_for(call, timeout=timeout)


async def _run_sync(func: Callable[..., Any], *args: Any) -> Any:
    result = await asyncio.to_thread(func, *args)
    if inspect.isawaitable(result):
        return await result
    return result

from __future__ import annotations

import asyncio
import functools
import time
from typing import Any, Callable, TypeVar

from sandboxproxy.services.telemetry import record_external_call


T = TypeVar("T")


async def call_blocking(
    func: Callable[..., T],
    *args: Any,
    integration: str,
    timeout_ms: int,
    **kwargs: Any,
) -> T:
    """Run a blocking SDK call on a worker thread with a bounded wait.

    ``TimeoutError`` propagates to the caller, which maps it onto the same
    failure path as any other transport error for that collaborator. The
    worker thread itself cannot be cancelled, so SDK calls should also carry
    their own request timeout.
    """
    started = time.monotonic()
    success = False
    try:
        result = await asyncio.wait_for(
            asyncio.to_thread(functools.partial(func, *args, **kwargs)),
            timeout=timeout_ms / 1000.0,
        )
        success = True
        return result
    finally:
        record_external_call(
            integration=integration,
            latency_ms=(time.monotonic() - started) * 1000.0,
            success=success,
        )

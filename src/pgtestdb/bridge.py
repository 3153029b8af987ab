"""Blocking bridge into asyncio for synchronous callers.

Provisioning and teardown are exposed as plain blocking calls, while asyncpg
is async-only. ``run_sync`` drives exactly one coroutine to completion on a
fresh, short-lived event loop and blocks until it finishes.

When the calling thread already runs an event loop (for example inside an
async pytest test) the fresh loop is started in a dedicated worker thread,
since a thread can only run one loop at a time.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable, Coroutine
from typing import Any, TypeVar

T = TypeVar("T")


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def run_sync(
    coro_fn: Callable[..., Coroutine[Any, Any, T]],
    *args: Any,
    thread_name: str = "pgtestdb-bridge",
    **kwargs: Any,
) -> T:
    """Run ``coro_fn(*args, **kwargs)`` to completion and return its result.

    Any exception raised by the coroutine is re-raised in the calling thread.
    """
    if not _loop_running():
        return asyncio.run(coro_fn(*args, **kwargs))

    outcome: dict[str, Any] = {}

    def _target() -> None:
        try:
            outcome["result"] = asyncio.run(coro_fn(*args, **kwargs))
        except BaseException as exc:  # handed back to the calling thread
            outcome["error"] = exc

    worker = threading.Thread(target=_target, name=thread_name)
    worker.start()
    worker.join()

    if "error" in outcome:
        raise outcome["error"]
    return outcome["result"]

import asyncio
import logging
from typing import Iterable, Awaitable, Optional, Callable, List, Set


logger = logging.getLogger(__name__)

_background_tasks: Set[asyncio.Task] = set()


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            await asyncio.gather(*task_list)
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()


def submit_background(coro: Awaitable[None], name: str) -> asyncio.Task:
    """Run ``coro`` detached from the caller.

    Failures are logged under ``name`` and never propagate. A strong
    reference is kept until the task finishes.
    """
    task = asyncio.ensure_future(coro)
    _background_tasks.add(task)

    def _done(t: asyncio.Task) -> None:
        _background_tasks.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.error("Background task %s failed: %s", name, exc)

    task.add_done_callback(_done)
    return task


async def drain_background(timeout: float = 5.0) -> None:
    pending = [t for t in _background_tasks if not t.done()]
    if not pending:
        return
    done, still_pending = await asyncio.wait(pending, timeout=timeout)
    for t in still_pending:
        t.cancel()
    if still_pending:
        await asyncio.gather(*still_pending, return_exceptions=True)

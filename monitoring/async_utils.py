import asyncio
import logging
from typing import Iterable, Awaitable, Optional, Callable, List


logger = logging.getLogger(__name__)


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
            results = await asyncio.gather(*task_list, return_exceptions=True)
            for task, result in zip(task_list, results):
                if isinstance(result, Exception):
                    logger.error("Task %s exited with error: %r", task.get_name(), result)
        if cleanup is not None:
            await cleanup()


async def cancel_task(task: Optional[asyncio.Task]) -> None:
    """Cancel ``task`` and wait until it has actually finished."""
    if task is None or task.done():
        return
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

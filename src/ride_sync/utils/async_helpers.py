import asyncio
import concurrent.futures
import inspect
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


def run_coroutine_safe(
    coro: Coroutine[Any, Any, Any],
    main_event_loop: asyncio.AbstractEventLoop | None = None,
    fallback_sync: bool = False,
) -> asyncio.Task[Any] | concurrent.futures.Future[Any] | Any | None:
    """Schedule a coroutine from synchronous code without awaiting it.

    On the thread running an event loop the coroutine becomes a task on that
    loop. From other threads it is handed to ``main_event_loop``. With no
    usable loop it runs to completion when ``fallback_sync`` is set, and is
    discarded otherwise.
    """
    if not inspect.iscoroutine(coro):
        logger.warning("Expected a coroutine, got %s", type(coro).__name__)
        return None

    try:
        running_loop = asyncio.get_running_loop()
    except RuntimeError:
        running_loop = None

    if running_loop is not None:
        return running_loop.create_task(coro)

    if main_event_loop is not None:
        if main_event_loop.is_closed():
            logger.warning("Event loop is closed, cannot schedule coroutine")
            coro.close()
            return None

        if main_event_loop.is_running():
            return asyncio.run_coroutine_threadsafe(coro, main_event_loop)

    if fallback_sync:
        try:
            return asyncio.run(coro)
        except Exception as e:
            logger.error("Failed to run coroutine synchronously: %s", e)
            return None

    logger.warning("No event loop available to run coroutine")
    coro.close()
    return None

"""
Async utility functions for running blocking work off the event loop.

Node executors that talk to model backends through blocking HTTP clients, or
executors written as plain functions, are pushed onto a shared thread pool so
the flow scheduler keeps reacting to other nodes.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

_worker_pool: Optional[ThreadPoolExecutor] = None
_WORKER_POOL_SIZE = 8


def get_worker_pool() -> ThreadPoolExecutor:
    """
    Get or create the global worker thread pool.

    Returns:
        ThreadPoolExecutor used for blocking node work
    """
    global _worker_pool
    if _worker_pool is None:
        _worker_pool = ThreadPoolExecutor(
            max_workers=_WORKER_POOL_SIZE,
            thread_name_prefix="node_worker"
        )
        logger.info("Initialized node worker pool with %d workers", _WORKER_POOL_SIZE)
    return _worker_pool


async def run_in_thread(func: Callable, *args, **kwargs) -> Any:
    """
    Run a blocking function in the worker pool.

    Args:
        func: Blocking function to execute
        *args: Positional arguments for the function
        **kwargs: Keyword arguments for the function

    Returns:
        Result from the function execution
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(get_worker_pool(), partial(func, *args, **kwargs))


def shutdown_thread_pools() -> None:
    """
    Shutdown the worker pool gracefully.

    Should be called on application shutdown.
    """
    global _worker_pool
    if _worker_pool:
        logger.info("Shutting down node worker pool...")
        _worker_pool.shutdown(wait=True)
        _worker_pool = None

"""
Run blocking Docker SDK calls without stalling the event loop.

The Docker SDK (and the other synchronous clients Shipgate talks to) block on
socket I/O. Every call made from a coroutine goes through async_docker_call so
that concurrent builds/pushes actually overlap.
"""

import asyncio
from typing import Any, Callable


async def async_docker_call(func: Callable[..., Any], *args, **kwargs) -> Any:
    """
    Execute a blocking callable in the default thread pool.

    Args:
        func: Synchronous callable (e.g. client.images.build)
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Whatever func returns; exceptions propagate unchanged
    """
    return await asyncio.to_thread(func, *args, **kwargs)

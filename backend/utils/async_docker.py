"""
Async wrapper for blocking Docker SDK calls.

The Docker SDK is synchronous (requests under the hood). Every runtime call
made from the update loop goes through async_docker_call so the event loop
stays responsive while the daemon works (pulls, stops with long timeouts,
waits on exiting containers).
"""

import asyncio
from typing import Any, Callable


async def async_docker_call(func: Callable, *args, **kwargs) -> Any:
    """
    Run a blocking Docker SDK call in the default thread pool.

    Args:
        func: Bound Docker SDK method (e.g. client.api.inspect_container)
        *args: Positional arguments forwarded to func
        **kwargs: Keyword arguments forwarded to func

    Returns:
        Whatever func returns. Exceptions raised by func propagate unchanged.
    """
    return await asyncio.to_thread(func, *args, **kwargs)

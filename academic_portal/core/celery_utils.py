"""
Running async engine code from Celery tasks.

Celery workers use the prefork pool. asyncio.run() would close the loop after
each task and strand the pooled asyncpg connections that are bound to it, so
tasks reuse one loop per worker process instead.
"""

import asyncio


def run_async_task(coro):
    """
    Run ``coro`` to completion on the worker's event loop, creating it if needed.

    The loop is left open for the next task.

    Usage:
        @celery_app.task
        def expire_break_glass_sessions():
            return run_async_task(sweep_expired_sessions())
    """
    try:
        loop = asyncio.get_event_loop()
        if loop.is_closed():
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    return loop.run_until_complete(coro)

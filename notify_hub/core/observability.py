import functools
import inspect
import logging
import time
from typing import Callable

from .logging import _redact

logger = logging.getLogger("steps")

def log_step(step: str):
    """
    Log entry, exit, timing and exceptions of a pipeline step.
    Example: @log_step("outbox.run_once")
    """
    def decorator(fn: Callable):
        @functools.wraps(fn)
        async def awrapped(*args, **kwargs):
            t0 = time.perf_counter()
            logger.debug("ENTER %s", step, extra={"extra": {"step": step, "args": _redact(kwargs)}})
            try:
                result = await fn(*args, **kwargs)
                dt = round((time.perf_counter() - t0) * 1000)
                logger.info("EXIT %s", step, extra={"extra": {"step": step, "elapsed_ms": dt, "result_preview": str(result)[:200]}})
                return result
            except Exception as e:
                dt = round((time.perf_counter() - t0) * 1000)
                logger.error("ERROR %s: %s", step, e, extra={"extra": {"step": step, "elapsed_ms": dt}}, exc_info=True)
                raise

        @functools.wraps(fn)
        def wrapped(*args, **kwargs):
            t0 = time.perf_counter()
            logger.debug("ENTER %s", step, extra={"extra": {"step": step, "args": _redact(kwargs)}})
            try:
                result = fn(*args, **kwargs)
                dt = round((time.perf_counter() - t0) * 1000)
                logger.info("EXIT %s", step, extra={"extra": {"step": step, "elapsed_ms": dt, "result_preview": str(result)[:200]}})
                return result
            except Exception as e:
                dt = round((time.perf_counter() - t0) * 1000)
                logger.error("ERROR %s: %s", step, e, extra={"extra": {"step": step, "elapsed_ms": dt}}, exc_info=True)
                raise

        if inspect.iscoroutinefunction(fn):
            return awrapped
        return wrapped

    return decorator

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable, Optional, TypeVar

from pdv_worker.errors import StageTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Calls that overrun their deadline keep running on this pool until the
# underlying client gives up; the caller's worker slot is released immediately.
_deadline_executor = ThreadPoolExecutor(max_workers=16, thread_name_prefix="pdv-deadline")


def call_with_deadline(label: str, timeout: Optional[float], fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run ``fn`` and raise StageTimeoutError if it does not return within ``timeout`` seconds."""
    if not timeout or timeout <= 0:
        return fn(*args, **kwargs)
    future = _deadline_executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        logger.warning("deadline_exceeded call=%s timeout=%.1fs", label, timeout)
        raise StageTimeoutError(label, timeout) from None

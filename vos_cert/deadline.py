"""Race a blocking call against a timer.

The call runs on a worker thread. When the timer wins the worker is
abandoned, not killed: whatever the call does server side still happens.
Pass ``on_abandoned`` to release whatever a late result holds.
"""
from concurrent import futures
from typing import Any, Callable, Optional

from vos_cert.errors import DeadlineExceeded


def race(
    func: Callable[..., Any],
    timeout: float,
    *args: Any,
    description: str = "Operation",
    on_abandoned: Optional[Callable[[Any], None]] = None,
    **kwargs: Any,
) -> Any:
    executor = futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="deadline")
    try:
        future = executor.submit(func, *args, **kwargs)
        done, _ = futures.wait([future], timeout=timeout)
        if not done:
            if on_abandoned is not None:
                future.add_done_callback(lambda late: _release(late, on_abandoned))
            raise DeadlineExceeded(
                f"{description} timeout after {timeout:g} seconds", timeout=timeout
            )
        return future.result()
    finally:
        executor.shutdown(wait=False)


def _release(future: futures.Future, on_abandoned: Callable[[Any], None]):
    if future.exception() is None:
        on_abandoned(future.result())

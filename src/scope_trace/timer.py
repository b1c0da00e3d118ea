"""
Timer module: scope guards that report one ProfileResult each.
"""

from __future__ import annotations
from typing import Any, Callable, Iterator, Optional, TypeVar
import functools
import threading
from contextlib import contextmanager

from .instrumentor import Instrumentor, ProfileResult

F = TypeVar("F", bound=Callable[..., Any])


def current_thread_id() -> int:
    """32-bit identity of the calling thread. Collisions are tolerated."""
    return threading.get_ident() & 0xFFFFFFFF


class InstrumentationTimer:
    """
    Measures one labeled region and submits exactly one event on stop().

    Use it as a context manager so stop() runs on every exit path:

        with InstrumentationTimer("load", instrumentor):
            load()

    stop() may also be called explicitly; later calls are no-ops. A timer
    that is never stopped reports when it is garbage collected.
    """

    def __init__(self, name: str, instrumentor: Optional[Instrumentor] = None) -> None:
        self.name = name
        if instrumentor is None:
            instrumentor = Instrumentor.get_global_instrumentor()
        self._instrumentor = instrumentor
        self._origin_ns = self._instrumentor.session_origin_ns()
        self._start_ns = self._instrumentor.now_ns()
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> Optional[ProfileResult]:
        """Report the elapsed time. Returns the submitted result, or None if already stopped."""
        if self._stopped:
            return None
        self._stopped = True

        end_ns = self._instrumentor.now_ns()
        duration_us = max(end_ns - self._start_ns, 0) // 1000
        start_us = self._instrumentor.timestamp_us(self._start_ns, self._origin_ns)

        result = ProfileResult(
            name=self.name,
            start=start_us,
            end=start_us + duration_us,
            thread_id=current_thread_id(),
        )
        self._instrumentor.write_profile(result)
        return result

    def __enter__(self) -> InstrumentationTimer:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def __del__(self) -> None:
        # Partially constructed timers have no _stopped attribute.
        if not getattr(self, "_stopped", True):
            self.stop()


@contextmanager
def profile_scope(name: str, instrumentor: Optional[Instrumentor] = None) -> Iterator[InstrumentationTimer]:
    """Time the enclosed block under ``name``."""
    timer = InstrumentationTimer(name, instrumentor)
    try:
        yield timer
    finally:
        timer.stop()


def profile_function(
    fn: Optional[F] = None,
    *,
    name: Optional[str] = None,
    instrumentor: Optional[Instrumentor] = None,
) -> Any:
    """
    Decorator timing every call of ``fn``.

    Can be used bare (``@profile_function``) or with arguments
    (``@profile_function(name="step")``). The label defaults to the
    function's qualified name.
    """

    def decorator(func: F) -> F:
        label = name or func.__qualname__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with InstrumentationTimer(label, instrumentor):
                return func(*args, **kwargs)

        return wrapper  # type: ignore[return-value]

    if fn is not None:
        return decorator(fn)
    return decorator

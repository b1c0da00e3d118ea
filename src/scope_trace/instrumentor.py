"""
Instrumentor module: streams profiled scopes into a Chrome Trace Event JSON file.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, IO, Iterator, List, Optional
import logging
import threading
import time
from contextlib import contextmanager

logger = logging.getLogger(__name__)

_HEADER = '{"otherData": {}, "traceEvents":['
_FOOTER = "]}"


@dataclass(frozen=True)
class ProfileResult:
    """One completed timed region. All times are integer microseconds."""
    name: str
    start: int
    end: int
    thread_id: int

    @property
    def duration(self) -> int:
        return self.end - self.start

    @property
    def sanitized_name(self) -> str:
        # Only double quotes are rewritten; no other escaping happens.
        return self.name.replace('"', "'")

    def to_json(self) -> str:
        return (
            '{"cat":"function","dur":%d,"name":"%s","ph":"X","pid":0,"tid":%d,"ts":%d}'
            % (self.duration, self.sanitized_name, self.thread_id, self.start)
        )


@dataclass
class InstrumentationSession:
    """The recording interval between begin_session() and end_session()."""
    name: str
    filepath: str
    started_ns: int = 0
    valid: bool = True


class Instrumentor:
    """
    Instrumentor collects ProfileResult records into a single trace file.

    The file is written incrementally: a header on begin_session(), one JSON
    object per write_profile() (comma separated), and a footer on
    end_session(). It is a complete JSON document only after end_session().

    Notes:
    - At most one session is active per instrumentor. A second
      begin_session() while active is ignored.
    - Every public method is safe to call from any thread. One lock covers
      the session, the file handle and the event counter.
    - Nothing here raises into the profiled program. Failures are logged and
      kept in last_error.
    - A timer finalized by the garbage collector while this thread already
      holds the lock is queued and written once the current operation ends.
    - get_global_instrumentor() returns the process-wide default instance.
    """

    _global_instance: Optional[Instrumentor] = None
    _global_lock = threading.Lock()

    def __init__(
        self,
        clock: Callable[[], int] = time.perf_counter_ns,
        relative_to_session: bool = True,
    ) -> None:
        """
        Initialize the Instrumentor.

        Args:
            clock: monotonic clock returning nanoseconds.
            relative_to_session: report ``ts`` as microseconds since the
                session began. When False, ``ts`` is the time elapsed since
                the timer's own start, measured when it stops.
        """
        self._clock = clock
        self.relative_to_session = relative_to_session

        self._lock = threading.Lock()
        self._session: Optional[InstrumentationSession] = None
        self._stream: Optional[IO[str]] = None
        self._profile_count = 0
        self._last_error: Optional[Exception] = None

        # Set on the thread currently holding _lock.
        self._local = threading.local()
        self._pending: List[ProfileResult] = []

    @property
    def is_active(self) -> bool:
        return self._session is not None

    @property
    def current_session(self) -> Optional[InstrumentationSession]:
        return self._session

    @property
    def profile_count(self) -> int:
        return self._profile_count

    @property
    def last_error(self) -> Optional[Exception]:
        return self._last_error

    def now_ns(self) -> int:
        return self._clock()

    def session_origin_ns(self) -> Optional[int]:
        """Clock reading at which the active session began, or None when idle."""
        session = self._session
        return session.started_ns if session is not None else None

    def timestamp_us(self, start_ns: int, origin_ns: Optional[int] = None) -> int:
        """
        Compute the ``ts`` value reported for a timer started at start_ns.

        origin_ns is the session origin captured when the timer was created.
        Without one the timer's own start is the origin and ``ts`` is 0.
        """
        if not self.relative_to_session:
            return (self.now_ns() - start_ns) // 1000

        if origin_ns is None:
            origin_ns = start_ns
        return max(start_ns - origin_ns, 0) // 1000

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._lock:
            self._local.held = True
            try:
                yield
            finally:
                while self._pending:
                    self._write_locked(self._pending.pop(0))
                self._local.held = False

    def begin_session(self, name: str, filepath: str) -> bool:
        """
        Open filepath and start recording into it.

        Returns True when a new session was started. Returns False when a
        session is already active (the call is ignored) or the file could
        not be opened (no session is started).
        """
        with self._locked():
            if self._session is not None:
                logger.warning(
                    "Session %r already active; ignoring begin_session(%r, %r)",
                    self._session.name, name, filepath,
                )
                return False

            try:
                stream = open(filepath, "w", encoding="utf-8")
            except (OSError, ValueError) as exc:
                logger.warning("Could not open trace file %s: %s", filepath, exc)
                self._last_error = exc
                return False

            try:
                stream.write(_HEADER)
                stream.flush()
            except OSError as exc:
                logger.error("Failed to write trace header to %s: %s", filepath, exc)
                self._last_error = exc
                stream.close()
                return False

            self._stream = stream
            self._profile_count = 0
            self._last_error = None
            self._session = InstrumentationSession(
                name=name, filepath=filepath, started_ns=self.now_ns(),
            )
            logger.debug("Began session %r -> %s", name, filepath)
            return True

    def end_session(self) -> None:
        """Write the footer and close the file. No-op when no session is active."""
        with self._locked():
            session, stream = self._session, self._stream
            if session is None:
                return

            self._session = None
            self._stream = None
            self._profile_count = 0

            try:
                if session.valid:
                    stream.write(_FOOTER)
                    stream.flush()
            except OSError as exc:
                logger.error("Failed to finish trace file %s: %s", session.filepath, exc)
                self._last_error = exc
            finally:
                try:
                    stream.close()
                except OSError as exc:
                    logger.error("Failed to close trace file %s: %s", session.filepath, exc)
                    self._last_error = exc

            logger.debug("Ended session %r", session.name)

    def write_profile(self, result: ProfileResult) -> None:
        """
        Append one event to the active session's file.

        Dropped silently when no session is active or the session has been
        invalidated by an earlier write failure. An event whose label cannot
        be encoded as UTF-8 is dropped on its own.
        """
        if getattr(self._local, "held", False):
            # Reentered from a finalizer on the thread holding the lock.
            if self._session is not None:
                self._pending.append(result)
            return

        with self._locked():
            self._write_locked(result)

    def _write_locked(self, result: ProfileResult) -> None:
        session = self._session
        if session is None or not session.valid:
            return

        payload = result.to_json()
        try:
            payload.encode("utf-8")
        except UnicodeEncodeError as exc:
            self._last_error = exc
            logger.warning("Dropping profile %r with unencodable name: %s", result.name, exc)
            return
        if self._profile_count > 0:
            payload = "," + payload

        try:
            self._stream.write(payload)
            self._stream.flush()
        except (OSError, ValueError) as exc:
            session.valid = False
            self._last_error = exc
            logger.error(
                "Failed to write profile to %s; dropping further events: %s",
                session.filepath, exc,
            )
            return

        self._profile_count += 1

    @contextmanager
    def session(self, name: str, filepath: str) -> Iterator[Instrumentor]:
        """
        Context manager running begin_session()/end_session() around a block.

        end_session() only runs when this call actually started the session.
        """
        started = self.begin_session(name, filepath)
        try:
            yield self
        finally:
            if started:
                self.end_session()

    @classmethod
    def init_global_instrumentor(
        cls,
        clock: Callable[[], int] = time.perf_counter_ns,
        relative_to_session: bool = True,
    ) -> Instrumentor:
        """
        Replace the process-wide Instrumentor.

        Any session active on the previous instance is ended.
        """
        with cls._global_lock:
            previous = cls._global_instance
            instance = cls(clock=clock, relative_to_session=relative_to_session)
            cls._global_instance = instance
        if previous is not None:
            previous.end_session()
        return instance

    @classmethod
    def get_global_instrumentor(cls) -> Instrumentor:
        """Return the process-wide Instrumentor, creating it on first use."""
        with cls._global_lock:
            if cls._global_instance is None:
                cls._global_instance = cls()
            return cls._global_instance


def begin_session(name: str, filepath: str) -> bool:
    return Instrumentor.get_global_instrumentor().begin_session(name, filepath)


def end_session() -> None:
    Instrumentor.get_global_instrumentor().end_session()


def write_profile(result: ProfileResult) -> None:
    Instrumentor.get_global_instrumentor().write_profile(result)

"""
ScopeTrace: a minimal scope profiler writing Chrome Trace Event JSON files.

Mark regions with InstrumentationTimer / profile_scope / profile_function,
record them between begin_session() and end_session(), and open the
resulting file in chrome://tracing or ui.perfetto.dev.
"""

from .instrumentor import (
    InstrumentationSession,
    Instrumentor,
    ProfileResult,
    begin_session,
    end_session,
    write_profile,
)
from .timer import InstrumentationTimer, current_thread_id, profile_function, profile_scope

__version__ = "0.1.0"
__all__ = [
    "InstrumentationSession",
    "InstrumentationTimer",
    "Instrumentor",
    "ProfileResult",
    "begin_session",
    "current_thread_id",
    "end_session",
    "profile_function",
    "profile_scope",
    "write_profile",
]

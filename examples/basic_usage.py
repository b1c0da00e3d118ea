#!/usr/bin/env python3
"""Profile a few sleeping workers and write a Chrome trace."""

from __future__ import annotations

import threading
import time
from pathlib import Path

from scope_trace import Instrumentor, InstrumentationTimer, profile_function


instrumentor = Instrumentor()


@profile_function(instrumentor=instrumentor)
def do_something(delay_s: float) -> None:
    time.sleep(delay_s)


def worker(index: int) -> None:
    with InstrumentationTimer(f"worker-{index}", instrumentor):
        do_something(0.01 * (index + 1))


def main() -> None:
    output_path = Path(__file__).with_name("basic_trace.json")

    with instrumentor.session("SessionName", output_path.as_posix()):
        threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    print(f"Trace saved to {output_path}. Open it in chrome://tracing or https://ui.perfetto.dev")


if __name__ == "__main__":
    main()

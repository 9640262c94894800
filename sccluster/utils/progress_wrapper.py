"""
Heartbeat messages for long calls that report no progress of their own.

t-SNE and modularity optimization on large graphs can run for minutes
inside third-party code; a background thread reports that they are still
running.
"""

import threading
import time
from contextlib import contextmanager
from typing import Callable, Optional

from sccluster.utils.logger import get_logger

logger = get_logger(__name__)


def format_elapsed_time(seconds: float) -> str:
    """Compact elapsed time: 42s, 3m07s, 1h05m."""
    seconds = int(round(seconds))
    minutes, secs = divmod(seconds, 60)
    if not minutes:
        return f"{secs}s"
    hours, minutes = divmod(minutes, 60)
    if not hours:
        return f"{minutes}m{secs:02d}s"
    return f"{hours}h{minutes:02d}m"


@contextmanager
def with_periodic_progress(
    operation_name: str,
    progress_callback: Optional[Callable[[str], None]] = None,
    update_interval: float = 15,
):
    """
    Report start, periodic heartbeats and completion of the wrapped block.

    Args:
        operation_name: Label used in messages (e.g. "Computing t-SNE")
        progress_callback: Receives each message (default: logger.info)
        update_interval: Seconds between heartbeats

    Example:
        with with_periodic_progress("Running louvain community detection"):
            graph.community_multilevel(weights="weight")
    """
    report = progress_callback or logger.info
    finished = threading.Event()
    started = time.monotonic()

    def heartbeat():
        while not finished.wait(update_interval):
            elapsed = format_elapsed_time(time.monotonic() - started)
            report(f"{operation_name} still running after {elapsed}")

    report(f"{operation_name} started")
    thread = threading.Thread(target=heartbeat, name=f"progress:{operation_name}", daemon=True)
    thread.start()
    try:
        yield
    finally:
        finished.set()
        thread.join(timeout=1.0)
        report(
            f"{operation_name} finished in "
            f"{format_elapsed_time(time.monotonic() - started)}"
        )

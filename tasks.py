"""
Background side effects (order emails, remote image cleanup).

Tasks run on a small thread pool so the request that triggered them is not held
open. A task that raises or returns False is retried with linear back-off up to
``max_attempts`` and then logged and dropped.
"""
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_for
from typing import Callable, Optional, Set

logger = logging.getLogger("mousepad.tasks")


class BackgroundDispatcher:
    def __init__(self, max_workers: int = 4, max_attempts: int = 3, retry_delay: float = 1.0):
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="mousepad-bg")
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    def submit(self, name: str, func: Callable[..., Optional[bool]], *args,
               max_attempts: Optional[int] = None) -> Future:
        attempts = max_attempts or self.max_attempts
        future = self._executor.submit(self._run, name, func, args, attempts)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _run(self, name: str, func: Callable[..., Optional[bool]], args: tuple, attempts: int) -> bool:
        for attempt in range(1, attempts + 1):
            try:
                if func(*args) is not False:
                    return True
                logger.warning("Background task %s failed (attempt %d/%d)", name, attempt, attempts)
            except Exception:
                logger.exception("Background task %s raised (attempt %d/%d)", name, attempt, attempts)
            if attempt < attempts and self.retry_delay:
                time.sleep(self.retry_delay * attempt)
        logger.error("Dropping background task %s after %d attempts", name, attempts)
        return False

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for every task submitted so far."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait_for(pending, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

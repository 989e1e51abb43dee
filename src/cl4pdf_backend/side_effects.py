"""
Fire-and-forget side effects (usage increments, audit events).

Tasks run on a small thread pool after the response is decided. A task
that raises is logged and dropped; nothing ever propagates back to the
request that submitted it.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from threading import Lock
from typing import Any, Callable, Optional, Set

logger = logging.getLogger(__name__)


class BackgroundDispatcher:
    def __init__(self, max_workers: int = 2) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="cl4pdf-bg")
        self._pending: Set[Future] = set()
        self._lock = Lock()

    def _run(self, label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        try:
            fn(*args, **kwargs)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Background task {label} failed: {exc}")

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def submit(self, label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Optional[Future]:
        """
        Schedule ``fn(*args, **kwargs)``.

        Returns:
            The task future, or None if the dispatcher is shut down (the
            task is dropped and logged)
        """
        try:
            future = self._executor.submit(self._run, label, fn, *args, **kwargs)
        except RuntimeError as exc:
            logger.error(f"Background task {label} dropped: {exc}")
            return None
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted task has finished. Returns False on timeout."""
        with self._lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_tasks: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_tasks)

"""
Blocking statements in worker threads
A cancelled await does not stop a thread, so each statement gets a StatementControl
the adapter wires to its driver's own stop mechanism. run_statement returns only
once the statement is no longer running.
"""

import asyncio
import logging
import threading
from typing import Callable, List, TypeVar

logger = logging.getLogger('index_maintenance.backends.statements')

T = TypeVar('T')


class StatementControl:
    """Stop request shared between the event loop and the worker thread."""

    def __init__(self):
        self.stop_requested = threading.Event()
        self._hooks: List[Callable[[], None]] = []
        self._lock = threading.Lock()

    def on_stop(self, hook: Callable[[], None]):
        """Register how to stop the running statement; runs now if a stop is already pending."""
        with self._lock:
            if not self.stop_requested.is_set():
                self._hooks.append(hook)
                return
        self._run_hook(hook)

    def request_stop(self):
        with self._lock:
            self.stop_requested.set()
            hooks = list(self._hooks)
        for hook in hooks:
            self._run_hook(hook)

    @staticmethod
    def _run_hook(hook: Callable[[], None]):
        try:
            hook()
        except Exception as e:
            logger.warning(f"Could not stop running statement: {e}")


async def run_statement(work: Callable[..., T], *args) -> T:
    """Run ``work(control, *args)`` in a thread.

    When the awaiting task is cancelled (a timeout, for instance) the statement is
    asked to stop and the worker is awaited before returning. If it failed, the
    cancellation propagates. If it completed before the stop took effect, its
    result is returned, since the work really did happen.
    """
    control = StatementControl()
    worker = asyncio.ensure_future(asyncio.to_thread(work, control, *args))
    try:
        return await asyncio.shield(worker)
    except asyncio.CancelledError:
        control.request_stop()
        logger.warning("Stopping statement after cancellation, waiting for it to end")
        await asyncio.wait({worker})
        if worker.cancelled() or worker.exception() is not None:
            raise
        return worker.result()

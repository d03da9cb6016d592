"""Inference execution layer.

Architecture:
    FastAPI (async) -> single-worker ThreadPoolExecutor -> ONNX inference

Model loading and predictions run off the event loop so the API stays
responsive, but never in parallel: requests queue on the one worker thread.
No timeout is applied to a running call.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferencePool:
    """Serializes blocking model calls onto a dedicated worker thread."""

    def __init__(self) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="onnx-inference",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    def _tracked(self, func: Callable[..., T], *args: object) -> T:
        with self._counter_lock:
            self._queue_depth -= 1
            self._active_count += 1
        try:
            return func(*args)
        finally:
            with self._counter_lock:
                self._active_count -= 1

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run a synchronous function on the inference thread and await its result."""
        with self._counter_lock:
            self._queue_depth += 1
        job = self._executor.submit(self._tracked, func, *args)
        try:
            return await asyncio.wrap_future(job)
        except asyncio.CancelledError:
            if job.cancel():
                with self._counter_lock:
                    self._queue_depth -= 1
            logger.debug("Caller went away; inference result will be discarded")
            raise

    @property
    def active_count(self) -> int:
        """Number of currently running inference tasks (0 or 1)."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of calls waiting for the worker thread."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)

"""Process-wide engine runtime shared by all handles."""

from __future__ import annotations

import logging
import threading

import torch

logger = logging.getLogger(__name__)


class BackendRuntime:
    """Reference-counted owner of the engine's process-wide settings.

    Torch's intra-op thread pool is global to the process, so it is
    configured once by the first :meth:`acquire` and restored by the
    matching last :meth:`release`.  Later acquires while the runtime is
    live only bump the count.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._refcount = 0
        self._saved_threads: int | None = None

    @property
    def refcount(self) -> int:
        return self._refcount

    def acquire(self, thread_count: int) -> None:
        with self._lock:
            if self._refcount == 0:
                self._saved_threads = torch.get_num_threads()
                torch.set_num_threads(thread_count)
                logger.info("backend runtime initialized (threads=%d)", thread_count)
            self._refcount += 1

    def release(self) -> None:
        with self._lock:
            if self._refcount == 0:
                logger.warning("backend runtime released more times than acquired")
                return
            self._refcount -= 1
            if self._refcount == 0:
                if self._saved_threads is not None:
                    torch.set_num_threads(self._saved_threads)
                self._saved_threads = None
                logger.info("backend runtime freed")


_RUNTIME = BackendRuntime()


def get_runtime() -> BackendRuntime:
    """Return the process-wide runtime."""
    return _RUNTIME

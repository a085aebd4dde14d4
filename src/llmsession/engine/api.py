"""Boundary operations: plain-value entry points over :class:`EngineHandle`.

Nothing raised inside the library crosses this module.  Each function turns
the error taxonomy into the status value its caller expects, and handles are
addressed by generation-checked :class:`HandleId` values so a stale or
foreign id can never reach a released handle.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from llmsession.engine.config import EngineConfig
from llmsession.engine.handle import BackendFactory, EngineHandle
from llmsession.errors import InvalidBufferError, InvalidHandleError, SessionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HandleId:
    """Opaque reference to a live handle: a registry slot and its generation."""

    index: int
    generation: int


class HandleRegistry:
    """Slot table mapping :class:`HandleId` to live handles.

    Freed slots are reused, and each reuse bumps the slot's generation, so ids
    issued before a release no longer resolve.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._slots: list[EngineHandle | None] = []
        self._generations: list[int] = []
        self._free: list[int] = []

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for slot in self._slots if slot is not None)

    def register(self, handle: EngineHandle) -> HandleId:
        with self._lock:
            if self._free:
                index = self._free.pop()
                self._generations[index] += 1
                self._slots[index] = handle
            else:
                index = len(self._slots)
                self._slots.append(handle)
                self._generations.append(0)
            return HandleId(index, self._generations[index])

    def get(self, handle_id: HandleId) -> EngineHandle:
        """Resolve ``handle_id``.

        Raises:
            InvalidHandleError: If the id is unknown, stale, or released.
        """
        with self._lock:
            handle = self._lookup(handle_id)
        if handle is None:
            raise InvalidHandleError(f"invalid handle {handle_id!r}")
        return handle

    def remove(self, handle_id: HandleId) -> EngineHandle | None:
        """Detach and return the handle for ``handle_id``; ``None`` if it does not resolve."""
        with self._lock:
            handle = self._lookup(handle_id)
            if handle is None:
                return None
            self._slots[handle_id.index] = None
            self._free.append(handle_id.index)
            return handle

    def _lookup(self, handle_id: HandleId) -> EngineHandle | None:
        if not isinstance(handle_id, HandleId):
            return None
        if not 0 <= handle_id.index < len(self._slots):
            return None
        if self._generations[handle_id.index] != handle_id.generation:
            return None
        return self._slots[handle_id.index]


_REGISTRY = HandleRegistry()


def get_registry() -> HandleRegistry:
    """Return the process-wide handle registry."""
    return _REGISTRY


# ---------------------------------------------------------------------------
# Boundary operations
# ---------------------------------------------------------------------------


def initialize(
    model_path: str,
    context_size: int,
    thread_count: int,
    use_mmap: bool,
    *,
    backend_factory: BackendFactory | None = None,
) -> HandleId | None:
    """Load a model and create a handle; ``None`` on any failure."""
    try:
        config = EngineConfig(
            model_path=model_path,
            context_size=context_size,
            thread_count=thread_count,
            use_mmap=use_mmap,
        )
        handle = EngineHandle.initialize(config, backend_factory=backend_factory)
    except (SessionError, ValueError) as exc:
        logger.error("initialize failed: %s", exc)
        return None
    except Exception:
        logger.exception("initialize failed")
        return None
    return _REGISTRY.register(handle)


def tokenize(handle_id: HandleId, text: str) -> int:
    """Token count of ``text``; negative on failure (``-1`` for an invalid handle)."""
    try:
        return _REGISTRY.get(handle_id).tokenize(text)
    except SessionError as exc:
        logger.error("tokenize failed: %s", exc)
        return exc.code


def prepare(handle_id: HandleId, prompt_text: str) -> bool:
    """Pre-fill ``prompt_text``; ``True`` when the handle is ready to generate."""
    try:
        _REGISTRY.get(handle_id).prepare(prompt_text)
    except SessionError as exc:
        logger.error("prepare failed: %s", exc)
        return False
    return True


def next_token(
    handle_id: HandleId,
    temperature: float,
    nucleus_p: float,
    out_buf: bytearray,
    buf_size: int,
) -> int:
    """Generate one token into ``out_buf``.

    The piece is truncated to ``buf_size - 1`` bytes and followed by a NUL.
    A buffer with no room for the NUL is rejected before any token is
    generated, so the session does not advance.

    Returns:
        Bytes written (excluding the NUL), ``0`` at end of stream, or a
        negative code: ``-1`` invalid handle, ``-2`` not prepared, ``-3``
        sampler failure, ``-4`` decode failure, ``-5`` unusable buffer.
    """
    size = min(buf_size, len(out_buf))
    if size <= 0:
        logger.error("next_token failed: buffer size %d leaves no room for output", buf_size)
        return InvalidBufferError.code
    try:
        piece = _REGISTRY.get(handle_id).next_token(temperature, nucleus_p)
    except SessionError as exc:
        logger.error("next_token failed: %s", exc)
        return exc.code

    n = min(len(piece), size - 1)
    out_buf[:n] = piece[:n]
    out_buf[n] = 0
    return n


def release(handle_id: HandleId) -> None:
    """Free the handle; unknown or already-released ids are ignored."""
    handle = _REGISTRY.remove(handle_id)
    if handle is None:
        return
    handle.release()

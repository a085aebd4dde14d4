"""Reusable fixed-capacity batch submitted to the engine per decode step."""

from __future__ import annotations

from typing import TYPE_CHECKING

import torch
from torch import Tensor

from llmsession.errors import BatchOverflowError, InvalidHandleError

if TYPE_CHECKING:
    from llmsession.engine.protocol import InferenceBackend


class Batch:
    """Pre-allocated batch of ``(token, position, sequence_id, emit_logits)`` entries.

    Storage is allocated once at construction and reused for every decode
    call; :meth:`clear` only resets the entry count.  Entries live in four
    parallel tensors, and only the first :attr:`n_tokens` of each are valid.

    Attributes:
        token: Token IDs, shape ``[capacity]``.
        pos: Absolute sequence positions, shape ``[capacity]``.
        seq_id: Sequence IDs, shape ``[capacity]`` (always ``0`` here).
        logits: Whether the engine should keep logits for the entry, shape ``[capacity]``.
        n_tokens: Number of valid entries.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self.token: Tensor = torch.zeros(capacity, dtype=torch.long)
        self.pos: Tensor = torch.zeros(capacity, dtype=torch.long)
        self.seq_id: Tensor = torch.zeros(capacity, dtype=torch.long)
        self.logits: Tensor = torch.zeros(capacity, dtype=torch.bool)
        self.n_tokens = 0
        self._closed = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def space_left(self) -> int:
        return self._capacity - self.n_tokens

    def clear(self) -> None:
        """Logically empty the batch (storage is kept)."""
        self.n_tokens = 0

    def set_entry(
        self,
        index: int,
        token_id: int,
        position: int,
        sequence_id: int = 0,
        emit_logits: bool = False,
    ) -> None:
        """Write entry ``index``, growing the entry count to cover it.

        Raises:
            InvalidHandleError: If the batch has been released.
            BatchOverflowError: If ``index`` is outside ``[0, capacity)`` or
                would leave a gap after the current last entry.
        """
        if self._closed:
            raise InvalidHandleError("batch has been released")
        if index < 0 or index >= self._capacity:
            raise BatchOverflowError(
                f"batch entry {index} out of range for capacity {self._capacity}"
            )
        if index > self.n_tokens:
            raise BatchOverflowError(
                f"batch entry {index} would leave a gap (n_tokens={self.n_tokens})"
            )
        self.token[index] = token_id
        self.pos[index] = position
        self.seq_id[index] = sequence_id
        self.logits[index] = emit_logits
        if index == self.n_tokens:
            self.n_tokens += 1

    def add(
        self,
        token_id: int,
        position: int,
        sequence_id: int = 0,
        emit_logits: bool = False,
    ) -> None:
        """Append an entry after the current last one."""
        self.set_entry(self.n_tokens, token_id, position, sequence_id, emit_logits)

    def entries(self) -> list[tuple[int, int, int, bool]]:
        """Valid entries as Python tuples (for logging and tests)."""
        n = self.n_tokens
        return list(
            zip(
                self.token[:n].tolist(),
                self.pos[:n].tolist(),
                self.seq_id[:n].tolist(),
                self.logits[:n].tolist(),
                strict=True,
            )
        )

    def submit(self, backend: InferenceBackend) -> int:
        """Run one decode step on ``backend`` with the current entries.

        Returns the engine status (``0`` on success).
        """
        if self._closed:
            raise InvalidHandleError("batch has been released")
        return backend.decode(self)

    def close(self) -> None:
        """Drop the backing storage.  Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.n_tokens = 0
        empty = torch.empty(0, dtype=torch.long)
        self.token = empty
        self.pos = empty
        self.seq_id = empty
        self.logits = torch.empty(0, dtype=torch.bool)

    @property
    def closed(self) -> bool:
        return self._closed

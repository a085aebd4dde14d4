"""Unit tests for the reusable decode batch."""

from __future__ import annotations

import pytest
import torch

from llmsession.engine.batch import Batch
from llmsession.errors import BatchOverflowError, InvalidHandleError


class RecordingBackend:
    def __init__(self, status: int = 0) -> None:
        self.status = status
        self.seen: list[list[tuple[int, int, int, bool]]] = []

    def decode(self, batch: Batch) -> int:
        self.seen.append(batch.entries())
        return self.status


class TestBatchEntries:
    def test_starts_empty(self) -> None:
        batch = Batch(4)
        assert batch.n_tokens == 0
        assert batch.capacity == 4
        assert batch.space_left == 4
        assert batch.entries() == []

    def test_add_and_entries(self) -> None:
        batch = Batch(4)
        batch.add(11, 0)
        batch.add(12, 1, emit_logits=True)
        assert batch.entries() == [(11, 0, 0, False), (12, 1, 0, True)]
        assert batch.space_left == 2

    def test_set_entry_overwrites(self) -> None:
        batch = Batch(4)
        batch.add(1, 0)
        batch.set_entry(0, 9, 5, emit_logits=True)
        assert batch.entries() == [(9, 5, 0, True)]

    def test_clear_keeps_storage(self) -> None:
        batch = Batch(4)
        storage = batch.token
        batch.add(1, 0)
        batch.clear()
        assert batch.n_tokens == 0
        assert batch.token is storage
        batch.add(2, 0)
        assert batch.entries() == [(2, 0, 0, False)]

    def test_storage_dtypes(self) -> None:
        batch = Batch(3)
        assert batch.token.dtype == torch.long
        assert batch.pos.dtype == torch.long
        assert batch.logits.dtype == torch.bool


class TestBatchBounds:
    def test_overflow(self) -> None:
        batch = Batch(2)
        batch.add(1, 0)
        batch.add(2, 1)
        with pytest.raises(BatchOverflowError):
            batch.add(3, 2)

    def test_negative_index(self) -> None:
        with pytest.raises(BatchOverflowError):
            Batch(2).set_entry(-1, 1, 0)

    def test_gap(self) -> None:
        with pytest.raises(BatchOverflowError, match="gap"):
            Batch(4).set_entry(2, 1, 0)

    def test_zero_capacity(self) -> None:
        with pytest.raises(ValueError):
            Batch(0)


class TestBatchLifecycle:
    def test_submit_returns_backend_status(self) -> None:
        batch = Batch(2)
        batch.add(5, 0, emit_logits=True)
        backend = RecordingBackend(status=1)
        assert batch.submit(backend) == 1  # type: ignore[arg-type]
        assert backend.seen == [[(5, 0, 0, True)]]

    def test_close_is_idempotent(self) -> None:
        batch = Batch(2)
        batch.close()
        batch.close()
        assert batch.closed
        with pytest.raises(InvalidHandleError, match="released"):
            batch.add(1, 0)
        with pytest.raises(InvalidHandleError, match="released"):
            batch.submit(RecordingBackend())  # type: ignore[arg-type]

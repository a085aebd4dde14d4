"""Engine protocol: the structural interface of the external inference engine."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from torch import Tensor

if TYPE_CHECKING:
    from llmsession.engine.batch import Batch


class InferenceBackend(Protocol):
    """Interface the session layer needs from an inference engine.

    The engine owns a model, its vocabulary, and one context (a sequence
    cache of at most :attr:`n_ctx` positions).  Everything else (weights,
    attention, numerics) stays behind this boundary.  The shipped
    :class:`~llmsession.engine.backend.TransformersBackend` and the fakes
    used in tests both satisfy it.
    """

    @property
    def n_ctx(self) -> int:
        """Context window size in tokens."""
        ...

    def tokenize(
        self,
        text: str,
        n_tokens_max: int,
        *,
        add_special: bool,
        parse_special: bool,
    ) -> tuple[int, list[int]]:
        """Tokenize ``text`` into at most ``n_tokens_max`` tokens.

        Returns:
            ``(n, tokens)``.  When the text needs more than ``n_tokens_max``
            tokens, ``n`` is the negated required count and ``tokens`` is empty.
        """
        ...

    def memory_clear(self) -> None:
        """Erase all positions from the sequence cache."""
        ...

    def decode(self, batch: Batch) -> int:
        """Advance the sequence cache by the entries of ``batch``.

        Returns ``0`` on success and a non-zero engine status otherwise.
        Logits are retained for the entries flagged ``emit_logits``.
        """
        ...

    def get_logits(self, i: int = -1) -> Tensor:
        """Logits (``[vocab_size]``) of the ``i``-th logit-emitting entry of the last decode."""
        ...

    def token_to_piece(self, token_id: int, *, special: bool = True) -> bytes:
        """Raw UTF-8 bytes of a single token (may be empty or a partial character)."""
        ...

    def is_eog(self, token_id: int) -> bool:
        """Whether the vocabulary flags ``token_id`` as end-of-generation."""
        ...

    def free_context(self) -> None:
        """Release the sequence cache and any per-context buffers."""
        ...

    def free_model(self) -> None:
        """Release the model weights and vocabulary."""
        ...

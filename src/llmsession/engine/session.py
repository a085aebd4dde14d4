"""Session state machine: prompt pre-fill, incremental decode, and stop detection."""

from __future__ import annotations

import logging
from enum import Enum

from llmsession.engine.batch import Batch
from llmsession.engine.config import EngineConfig
from llmsession.engine.protocol import InferenceBackend
from llmsession.engine.sampler import SamplerCache
from llmsession.errors import (
    DecodeError,
    EmptyPromptError,
    InvalidHandleError,
    NotPreparedError,
    PromptTooLongError,
    SessionError,
)

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Lifecycle states of a session.

    Transitions::

        UNINITIALIZED ──(prepare ok)──> PREPARED ──(next_token)──> GENERATING
              ^                            │  ^                        │
              └───(prepare fails)──────────┘  └──(prepare new prompt)──┘

        any state ──(release)──> RELEASED
    """

    UNINITIALIZED = "uninitialized"
    PREPARED = "prepared"
    GENERATING = "generating"
    RELEASED = "released"


class Session:
    """Positional and capacity bookkeeping for one sequence in the engine cache.

    The session is the only writer of the engine's sequence cache.  It keeps
    ``position_cursor`` equal to the number of positions the cache holds,
    and while ready maintains
    ``position_cursor == prompt_token_count + generated_token_count``.

    A zero-length piece from :meth:`next_token` is a normal end-of-stream
    signal, distinct from the exceptions it raises on failure;
    :attr:`stop_reason` records which guard produced it.

    Args:
        backend: The engine to drive.
        batch: Reusable batch; its capacity bounds every pre-fill chunk.
        sampler: Sampler cache consulted on every generation step.
        config: Engine configuration (margins, stop markers).
    """

    def __init__(
        self,
        backend: InferenceBackend,
        batch: Batch,
        sampler: SamplerCache,
        config: EngineConfig,
    ) -> None:
        self._backend = backend
        self._batch = batch
        self._sampler = sampler
        self._config = config
        self._stop_markers = tuple(m.encode("utf-8") for m in config.stop_markers)

        self.context_capacity: int = backend.n_ctx
        self.position_cursor = 0
        self.prompt_token_count = 0
        self.generated_token_count = 0
        self.generation_limit = config.min_generation_limit
        self.state = SessionState.UNINITIALIZED
        self.stop_reason: str | None = None
        self.last_token_id: int | None = None

    @property
    def is_ready(self) -> bool:
        return self.state in (SessionState.PREPARED, SessionState.GENERATING)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def tokenize(self, text: str) -> int:
        """Count the tokens ``text`` would occupy (no special-token handling).

        Returns a negative value if the engine cannot tokenize the text.
        Does not touch the session or the engine cache.
        """
        self._require_live()
        n, _ = self._tokenize(
            text,
            len(text.encode("utf-8")) + 4,
            add_special=False,
            parse_special=False,
        )
        return n

    # ------------------------------------------------------------------
    # Prepare
    # ------------------------------------------------------------------

    def prepare(self, prompt_text: str) -> None:
        """Reset the engine cache and pre-fill it with ``prompt_text``.

        On success the session is ready for :meth:`next_token`.  On any
        failure the session is left not-ready; there is no partially
        prepared state.

        Raises:
            EmptyPromptError: If the prompt tokenizes to nothing.
            PromptTooLongError: If ``tokens >= context_capacity - safety_margin``.
            DecodeError: If the engine rejects a pre-fill chunk.
        """
        self._require_live()
        self.state = SessionState.UNINITIALIZED
        self.stop_reason = None
        self.last_token_id = None

        logger.info("prepare: clearing sequence cache")
        self._backend.memory_clear()
        self.position_cursor = 0
        self.prompt_token_count = 0
        self.generated_token_count = 0

        n_tokens, tokens = self._tokenize(
            prompt_text,
            len(prompt_text.encode("utf-8")) + 1,
            add_special=True,
            parse_special=True,
        )
        if n_tokens < 0:
            raise SessionError(f"tokenization failed with status {n_tokens}")
        logger.info("prepare: n_tokens=%d", n_tokens)
        if n_tokens == 0:
            raise EmptyPromptError("prompt produced no tokens")

        safety = self._config.safety_margin
        if n_tokens >= self.context_capacity - safety:
            logger.error(
                "prepare: prompt too long (%d >= %d - %d)",
                n_tokens,
                self.context_capacity,
                safety,
            )
            raise PromptTooLongError(
                f"prompt has {n_tokens} tokens; limit is {self.context_capacity - safety - 1} "
                f"(context {self.context_capacity}, safety margin {safety})"
            )

        chunk_size = self._batch.capacity
        for start in range(0, n_tokens, chunk_size):
            chunk = tokens[start : start + chunk_size]
            self._batch.clear()
            for j, token_id in enumerate(chunk):
                self._batch.add(
                    token_id,
                    self.position_cursor + j,
                    sequence_id=0,
                    emit_logits=(j == len(chunk) - 1),
                )
            logger.debug("prepare: decoding chunk %d/%d", start, n_tokens)
            status = self._batch.submit(self._backend)
            if status != 0:
                logger.error("prepare: decode failed at token %d (status %d)", start, status)
                raise DecodeError(f"pre-fill decode failed at token {start} (status {status})")
            self.position_cursor += len(chunk)

        self.prompt_token_count = self.position_cursor
        self.generated_token_count = 0
        self.generation_limit = max(
            self._config.min_generation_limit,
            self.context_capacity - self.prompt_token_count - safety,
        )
        self._sampler.reset()
        self.state = SessionState.PREPARED
        logger.info(
            "prepare: success (prompt=%d, generation_limit=%d)",
            self.prompt_token_count,
            self.generation_limit,
        )

    # ------------------------------------------------------------------
    # Generate
    # ------------------------------------------------------------------

    def next_token(self, temperature: float, top_p: float) -> bytes:
        """Sample, check, and commit one token.

        Returns:
            The token's UTF-8 bytes, or ``b""`` when generation has ended
            (context full, length limit, stop marker, or end-of-generation
            token).  A committed token may itself decode to ``b""``; check
            :attr:`stop_reason` to tell the two apart.

        Raises:
            NotPreparedError: If no prompt has been prepared successfully.
            SamplerInitError: If the sampling pipeline cannot be built.
            DecodeError: If the engine rejects the token.  The cache state is
                undefined afterwards; re-prepare before generating again.
        """
        self._require_live()
        if not self.is_ready:
            raise NotPreparedError("session is not prepared; call prepare() first")

        chain = self._sampler.configure(temperature, top_p)

        if self.position_cursor >= self.context_capacity - self._config.context_reserve:
            logger.info(
                "next_token: context full (cursor=%d, capacity=%d), stopping",
                self.position_cursor,
                self.context_capacity,
            )
            return self._stop("context")

        if self.generated_token_count >= self.generation_limit:
            logger.info("next_token: generation limit %d reached", self.generation_limit)
            return self._stop("length")

        token_id = chain.sample(self._backend.get_logits(-1))
        piece = self._backend.token_to_piece(token_id, special=True)

        if not piece:
            logger.debug("next_token: sampled id=%d (empty piece)", token_id)
        elif any(marker in piece for marker in self._stop_markers):
            logger.info("next_token: stop marker in piece %r", piece)
            return self._stop("stop")

        if self._backend.is_eog(token_id):
            logger.info("next_token: end-of-generation token %d", token_id)
            return self._stop("eos")

        self._batch.clear()
        self._batch.add(token_id, self.position_cursor, sequence_id=0, emit_logits=True)
        status = self._batch.submit(self._backend)
        if status != 0:
            logger.error("next_token: decode failed with status %d", status)
            raise DecodeError(
                f"decode of token {token_id} at position {self.position_cursor} "
                f"failed (status {status})"
            )

        self.state = SessionState.GENERATING
        self.position_cursor += 1
        self.generated_token_count += 1
        self.last_token_id = token_id
        self.stop_reason = None
        return piece

    def close(self) -> None:
        self.state = SessionState.RELEASED

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _tokenize(
        self,
        text: str,
        n_tokens_max: int,
        *,
        add_special: bool,
        parse_special: bool,
    ) -> tuple[int, list[int]]:
        """Two-phase tokenization: heuristic capacity first, exact capacity on retry."""
        n, tokens = self._backend.tokenize(
            text, n_tokens_max, add_special=add_special, parse_special=parse_special
        )
        if n < 0:
            n, tokens = self._backend.tokenize(
                text, -n, add_special=add_special, parse_special=parse_special
            )
        return n, tokens

    def _stop(self, reason: str) -> bytes:
        self.stop_reason = reason
        return b""

    def _require_live(self) -> None:
        if self.state is SessionState.RELEASED:
            raise InvalidHandleError("session has been released")

"""Streamed generation over an :class:`EngineHandle`.

Turns the byte pieces of ``next_token`` into text deltas: pieces are joined
with an incremental UTF-8 decoder (a multi-byte character may span several
tokens), and text that could be the start of a stop word is held back until
it is known not to be one.
"""

from __future__ import annotations

import codecs
import logging
import math
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass

from llmsession.engine.handle import EngineHandle
from llmsession.errors import SessionError

logger = logging.getLogger(__name__)

DEFAULT_STOP_WORDS: tuple[str, ...] = ("<|user|>", "<|im_start|>", "<|im_end|>")


@dataclass
class GenerationParams:
    """Per-request generation settings.

    Attributes:
        max_tokens: Upper bound on ``next_token`` calls for the request.
        temperature: Sampling temperature; ``0`` selects greedily.
        top_p: Nucleus threshold in ``[0, 1]``.
        stop_words: Text that ends the stream; never emitted.
    """

    max_tokens: int = 200
    temperature: float = 0.2
    top_p: float = 0.9
    stop_words: tuple[str, ...] = DEFAULT_STOP_WORDS

    def __post_init__(self) -> None:
        self.stop_words = tuple(self.stop_words)
        self.validate()

    def validate(self) -> None:
        """Validate parameter ranges, raising ``ValueError`` on invalid settings."""
        if self.max_tokens < 1:
            raise ValueError(f"max_tokens must be >= 1, got {self.max_tokens}")
        if not math.isfinite(self.temperature) or self.temperature < 0.0:
            raise ValueError(f"temperature must be >= 0, got {self.temperature}")
        if not math.isfinite(self.top_p) or not (0.0 <= self.top_p <= 1.0):
            raise ValueError(f"top_p must be in [0, 1], got {self.top_p}")
        if any(not word for word in self.stop_words):
            raise ValueError("stop_words must not contain empty strings")


@dataclass
class StepOutput:
    """One streamed chunk of a request.

    Every request produces zero or more unfinished outputs carrying text,
    then exactly one ``finished`` output.  A failed request's final output
    has ``error`` set and no ``finish_reason``.
    """

    request_id: str
    text_delta: str
    finished: bool
    finish_reason: str | None = None
    error: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    elapsed_s: float | None = None
    tokens_per_second: float | None = None


class StopWordFilter:
    """Hold back text until it cannot be the beginning of a stop word.

    :meth:`feed` returns the text safe to emit and whether a stop word was
    found.  On a match everything from the stop word on is dropped.
    """

    def __init__(self, stop_words: tuple[str, ...]) -> None:
        self._stop_words = stop_words
        self._pending = ""
        self.stopped = False

    def feed(self, text: str) -> tuple[str, bool]:
        if self.stopped:
            return "", True
        buffer = self._pending + text

        hits = [i for i in (buffer.find(w) for w in self._stop_words) if i >= 0]
        if hits:
            self._pending = ""
            self.stopped = True
            return buffer[: min(hits)], True

        cut = buffer.rfind("<")
        if cut >= 0 and self._could_start_stop_word(buffer[cut:]):
            self._pending = buffer[cut:]
            return buffer[:cut], False

        self._pending = ""
        return buffer, False

    def flush(self) -> str:
        """Release held-back text at the end of the stream."""
        held, self._pending = self._pending, ""
        return "" if self.stopped else held

    def _could_start_stop_word(self, tail: str) -> bool:
        return any(word.startswith(tail) for word in self._stop_words)


def stream_generate(
    handle: EngineHandle,
    prompt: str,
    params: GenerationParams,
    *,
    request_id: str = "",
    cancel_event: threading.Event | None = None,
) -> Iterator[StepOutput]:
    """Prepare ``prompt`` on ``handle`` and yield its completion incrementally.

    Cancellation is checked before each token.  Finish reasons are the
    session's own (``"eos"``, ``"stop"``, ``"length"``, ``"context"``), plus
    ``"stop"`` for a stop word found in the text, ``"length"`` when
    ``max_tokens`` runs out and ``"cancelled"``.
    """
    started = time.perf_counter()
    try:
        handle.prepare(prompt)
    except SessionError as exc:
        logger.error("request %s: prepare failed: %s", request_id, exc)
        yield StepOutput(request_id, "", finished=True, error=str(exc))
        return

    prompt_tokens = handle.prompt_token_count
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    stop_filter = StopWordFilter(params.stop_words)
    finish_reason = "length"

    for _ in range(params.max_tokens):
        if cancel_event is not None and cancel_event.is_set():
            finish_reason = "cancelled"
            break
        try:
            piece = handle.next_token(params.temperature, params.top_p)
        except SessionError as exc:
            logger.error("request %s: generation failed: %s", request_id, exc)
            yield StepOutput(
                request_id,
                "",
                finished=True,
                error=str(exc),
                prompt_tokens=prompt_tokens,
                completion_tokens=handle.generated_token_count,
            )
            return

        if not piece:
            if handle.stop_reason is not None:
                finish_reason = handle.stop_reason
                break
            continue

        delta, stopped = stop_filter.feed(decoder.decode(piece))
        if delta:
            yield StepOutput(
                request_id,
                delta,
                finished=False,
                prompt_tokens=prompt_tokens,
                completion_tokens=handle.generated_token_count,
            )
        if stopped:
            finish_reason = "stop"
            break

    tail = ""
    if finish_reason != "stop":
        tail, stopped = stop_filter.feed(decoder.decode(b"", final=True))
        if stopped:
            finish_reason = "stop"
        else:
            tail += stop_filter.flush()

    elapsed = time.perf_counter() - started
    completion_tokens = handle.generated_token_count
    tokens_per_second = completion_tokens / elapsed if elapsed > 0 else None
    logger.info(
        "request %s finished: reason=%s prompt=%d completion=%d (%.1f tok/s)",
        request_id,
        finish_reason,
        prompt_tokens,
        completion_tokens,
        tokens_per_second or 0.0,
    )
    yield StepOutput(
        request_id,
        tail,
        finished=True,
        finish_reason=finish_reason,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        elapsed_s=elapsed,
        tokens_per_second=tokens_per_second,
    )

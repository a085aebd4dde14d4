"""Error taxonomy for the session layer.

Every failure raised inside the library derives from :class:`SessionError`.
The boundary module (:mod:`llmsession.engine.api`) is the only place that
turns these into plain status values; ``code`` is the negative value it
reports for errors that can surface from ``next_token``.
"""

from __future__ import annotations


class SessionError(Exception):
    """Base class for all session-layer failures."""

    code: int = -1


class InvalidHandleError(SessionError):
    """The handle is unknown, stale, or already released."""

    code = -1


class NotPreparedError(SessionError):
    """``next_token`` was called before a successful ``prepare``."""

    code = -2


class SamplerInitError(SessionError):
    """The sampling pipeline could not be built for the requested parameters."""

    code = -3


class DecodeError(SessionError):
    """The engine rejected a decode submission.

    The engine cache is in an undefined state afterwards; callers should
    re-prepare before generating again.
    """

    code = -4


class ModelLoadError(SessionError):
    """The model weights could not be loaded."""


class ContextInitError(SessionError):
    """The inference context could not be created for a loaded model."""


class PromptTooLongError(SessionError):
    """The prompt does not fit in the context window minus the safety margin."""


class EmptyPromptError(SessionError):
    """The prompt tokenized to zero tokens, so there are no logits to sample from."""


class BatchOverflowError(SessionError):
    """An entry was written past the batch capacity (indicates a logic error)."""


class InvalidBufferError(SessionError):
    """The output buffer for ``next_token`` cannot hold even the terminating NUL."""

    code = -5

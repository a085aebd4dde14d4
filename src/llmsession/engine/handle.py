"""Engine handle: owns the model, context, batch and sampler behind one session."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Self

from llmsession.engine.backend import TransformersBackend
from llmsession.engine.batch import Batch
from llmsession.engine.config import MAX_COMPUTE_BATCH, EngineConfig
from llmsession.engine.protocol import InferenceBackend
from llmsession.engine.runtime import get_runtime
from llmsession.engine.sampler import SamplerCache
from llmsession.engine.session import Session, SessionState
from llmsession.errors import InvalidHandleError

logger = logging.getLogger(__name__)

BackendFactory = Callable[[EngineConfig], InferenceBackend]


class EngineHandle:
    """One loaded model, its inference context, and the session driving it.

    Handles are created with :meth:`initialize` (loads a model) or
    :meth:`from_components` (wraps a pre-built backend).  Callers only see the
    session operations and read-only counters; the backend stays private.
    Calls on one handle must not overlap.
    """

    @classmethod
    def initialize(
        cls,
        config: EngineConfig,
        *,
        backend_factory: BackendFactory | None = None,
    ) -> Self:
        """Acquire the runtime, load the model, and build a ready-to-prepare handle.

        Raises:
            ModelLoadError: If the model cannot be loaded.
            ContextInitError: If the inference context cannot be created.

        The runtime reference is returned on either failure.
        """
        factory = backend_factory or TransformersBackend.load
        runtime = get_runtime()
        runtime.acquire(config.thread_count)
        logger.info(
            "initializing handle: model=%s ctx=%d threads=%d mmap=%s",
            config.model_path,
            config.context_size,
            config.thread_count,
            config.use_mmap,
        )
        try:
            backend = factory(config)
        except Exception:
            runtime.release()
            raise

        handle = object.__new__(cls)
        handle._init_components(config, backend, owns_runtime=True)
        logger.info("handle ready (n_ctx=%d, batch=%d)", backend.n_ctx, handle._batch.capacity)
        return handle

    @classmethod
    def from_components(cls, config: EngineConfig, backend: InferenceBackend) -> Self:
        """Create a handle around a pre-built backend (for testing)."""
        handle = object.__new__(cls)
        handle._init_components(config, backend, owns_runtime=False)
        return handle

    def _init_components(
        self,
        config: EngineConfig,
        backend: InferenceBackend,
        *,
        owns_runtime: bool,
    ) -> None:
        self.config = config
        self._backend: InferenceBackend | None = backend
        self._batch = Batch(min(MAX_COMPUTE_BATCH, config.n_batch))
        self._sampler = SamplerCache(config)
        self._session = Session(backend, self._batch, self._sampler, config)
        self._owns_runtime = owns_runtime

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def model_path(self) -> str:
        return self.config.model_path

    @property
    def released(self) -> bool:
        return self._backend is None

    @property
    def state(self) -> SessionState:
        return self._session.state

    @property
    def is_ready(self) -> bool:
        return self._session.is_ready

    @property
    def context_capacity(self) -> int:
        return self._session.context_capacity

    @property
    def position_cursor(self) -> int:
        return self._session.position_cursor

    @property
    def prompt_token_count(self) -> int:
        return self._session.prompt_token_count

    @property
    def generated_token_count(self) -> int:
        return self._session.generated_token_count

    @property
    def generation_limit(self) -> int:
        return self._session.generation_limit

    @property
    def stop_reason(self) -> str | None:
        return self._session.stop_reason

    @property
    def sampler_build_count(self) -> int:
        return self._sampler.build_count

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------

    def tokenize(self, text: str) -> int:
        self._check_live()
        return self._session.tokenize(text)

    def prepare(self, prompt_text: str) -> None:
        self._check_live()
        self._session.prepare(prompt_text)

    def next_token(self, temperature: float, top_p: float) -> bytes:
        self._check_live()
        return self._session.next_token(temperature, top_p)

    def release(self) -> None:
        """Free sampler, batch, context, model, then the runtime reference.

        Safe to call more than once.
        """
        backend = self._backend
        if backend is None:
            return
        self._backend = None
        self._session.close()
        self._sampler.close()
        self._batch.close()
        backend.free_context()
        backend.free_model()
        if self._owns_runtime:
            get_runtime().release()
            self._owns_runtime = False
        logger.info("handle released (model=%s)", self.config.model_path)

    def _check_live(self) -> None:
        if self._backend is None:
            raise InvalidHandleError("handle has been released")

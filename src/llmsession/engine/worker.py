"""Background worker that runs generation requests against one engine handle."""

from __future__ import annotations

import dataclasses
import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

from llmsession.engine.config import EngineConfig
from llmsession.engine.handle import EngineHandle
from llmsession.engine.stream import GenerationParams, StepOutput, stream_generate
from llmsession.errors import SessionError
from llmsession.loader.chat_template import build_budgeted_prompt

logger = logging.getLogger(__name__)

OutputSink = Callable[[StepOutput], None]
HandleFactory = Callable[[EngineConfig], EngineHandle]


@dataclass
class ChatPrompt:
    """Conversation rendered into a prompt on the worker thread, within the context budget."""

    messages: list[dict[str, str]]
    system_prompt: str | None = None
    model_type: str = "chatml"
    reserve: int = 200


@dataclass
class GenerationRequest:
    """A prompt (or a conversation) to complete, optionally on a specific model."""

    prompt: str = ""
    chat: ChatPrompt | None = None
    params: GenerationParams = field(default_factory=GenerationParams)
    model_path: str | None = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)


class SessionWorker:
    """Serializes generation on a dedicated thread.

    Only one request runs at a time.  Submitting while a request is running
    cancels it and queues the new one; a request that was still waiting is
    replaced (latest wins).  Each request's outputs go to its sink, and every
    request ends with exactly one finished output, whether it completed,
    failed, or was cancelled or replaced.

    Sinks are called from the worker thread, except for the cancellation
    notice of a request replaced before it started, which is delivered on
    the caller's thread.

    Args:
        config: Base engine configuration.  ``config.model_path`` is the
            model used by requests that do not name one.
        handle_factory: Builds a handle from a configuration; defaults to
            :meth:`EngineHandle.initialize`.
    """

    def __init__(
        self,
        config: EngineConfig,
        *,
        handle_factory: HandleFactory | None = None,
    ) -> None:
        self._config = config
        self._factory: HandleFactory = handle_factory or EngineHandle.initialize
        self._handle: EngineHandle | None = None

        self._cond = threading.Condition()
        self._pending: tuple[GenerationRequest, OutputSink] | None = None
        self._preload: str | None = None
        self._current_cancel: threading.Event | None = None
        self._current_id: str | None = None
        self._stopping = False

        self._thread = threading.Thread(target=self._run, name="session-worker", daemon=True)
        self._thread.start()

    @property
    def model_path(self) -> str | None:
        """Path of the loaded model, or ``None`` if nothing is loaded."""
        handle = self._handle
        return handle.model_path if handle is not None else None

    @property
    def alive(self) -> bool:
        return self._thread.is_alive()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, request: GenerationRequest, sink: OutputSink) -> None:
        """Queue ``request``, cancelling whatever is running or waiting."""
        with self._cond:
            if self._stopping:
                raise RuntimeError("worker has been stopped")
            replaced = self._pending
            self._pending = (request, sink)
            if self._current_cancel is not None:
                self._current_cancel.set()
            self._cond.notify()
        if replaced is not None:
            logger.info("request %s replaced before it started", replaced[0].request_id)
            _emit(replaced[1], _cancelled(replaced[0]))

    def cancel(self, request_id: str | None = None) -> None:
        """Cancel the running request and drop the waiting one.

        With ``request_id``, only the request carrying that id is affected.
        """
        with self._cond:
            dropped = None
            pending = self._pending
            if pending is not None and request_id in (None, pending[0].request_id):
                dropped, self._pending = pending, None
            if self._current_cancel is not None and request_id in (None, self._current_id):
                self._current_cancel.set()
        if dropped is not None:
            _emit(dropped[1], _cancelled(dropped[0]))

    def preload(self, model_path: str | None = None) -> None:
        """Load ``model_path`` (default: the configured model) before it is needed."""
        with self._cond:
            if self._stopping:
                raise RuntimeError("worker has been stopped")
            self._preload = model_path or self._config.model_path
            self._cond.notify()

    def stop(self, timeout: float | None = None) -> None:
        """Cancel outstanding work, release the handle, and join the thread."""
        self.cancel()
        with self._cond:
            self._stopping = True
            self._cond.notify()
        self._thread.join(timeout)

    # ------------------------------------------------------------------
    # Worker thread
    # ------------------------------------------------------------------

    def _run(self) -> None:
        try:
            while True:
                with self._cond:
                    while not self._stopping and self._pending is None and self._preload is None:
                        self._cond.wait()
                    if self._stopping:
                        leftover, self._pending = self._pending, None
                        if leftover is not None:
                            _emit(leftover[1], _cancelled(leftover[0]))
                        break
                    preload, self._preload = self._preload, None
                    job, self._pending = self._pending, None
                    cancel = threading.Event()
                    self._current_cancel = cancel if job is not None else None
                    self._current_id = job[0].request_id if job is not None else None

                if preload is not None:
                    try:
                        self._ensure_handle(preload)
                    except (SessionError, ValueError) as exc:
                        logger.error("preload of %s failed: %s", preload, exc)
                    except Exception:
                        logger.exception("preload of %s failed", preload)

                if job is not None:
                    request, sink = job
                    self._process(request, sink, cancel)
                    with self._cond:
                        self._current_cancel = None
                        self._current_id = None
        finally:
            self._release_handle()
            logger.info("session worker stopped")

    def _process(
        self,
        request: GenerationRequest,
        sink: OutputSink,
        cancel: threading.Event,
    ) -> None:
        model_path = request.model_path or self._config.model_path
        finished = False
        try:
            handle = self._ensure_handle(model_path)
            prompt = self._render_prompt(request, handle)
            for output in stream_generate(
                handle,
                prompt,
                request.params,
                request_id=request.request_id,
                cancel_event=cancel,
            ):
                finished = finished or output.finished
                _emit(sink, output)
            return
        except (SessionError, ValueError) as exc:
            logger.error("request %s: %s", request.request_id, exc)
            error = str(exc)
        except Exception as exc:
            logger.exception("request %s failed", request.request_id)
            error = f"{type(exc).__name__}: {exc}"

        if not finished:
            _emit(sink, StepOutput(request.request_id, "", finished=True, error=error))

    @staticmethod
    def _render_prompt(request: GenerationRequest, handle: EngineHandle) -> str:
        chat = request.chat
        if chat is None:
            return request.prompt
        return build_budgeted_prompt(
            chat.messages,
            handle.tokenize,
            system_prompt=chat.system_prompt,
            context_size=handle.context_capacity,
            reserve=chat.reserve,
            model_type=chat.model_type,
        )

    def _ensure_handle(self, model_path: str) -> EngineHandle:
        handle = self._handle
        if handle is not None and handle.model_path == model_path:
            return handle
        if handle is not None:
            logger.info("swapping model %s -> %s", handle.model_path, model_path)
            self._release_handle()
        self._handle = self._factory(dataclasses.replace(self._config, model_path=model_path))
        return self._handle

    def _release_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.release()


def _cancelled(request: GenerationRequest) -> StepOutput:
    return StepOutput(request.request_id, "", finished=True, finish_reason="cancelled")


def _emit(sink: OutputSink, output: StepOutput) -> None:
    try:
        sink(output)
    except Exception:
        logger.exception("output sink raised for request %s", output.request_id)

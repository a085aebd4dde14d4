"""FastAPI application streaming session output over SSE."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from typing import Any, Literal

import orjson
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, field_validator
from sse_starlette.sse import EventSourceResponse

from llmsession.engine.config import EngineConfig
from llmsession.engine.stream import GenerationParams, StepOutput
from llmsession.engine.worker import ChatPrompt, GenerationRequest, SessionWorker

logger = logging.getLogger(__name__)


class _SamplingFields(BaseModel):
    model_config = ConfigDict(extra="forbid")

    model: str | None = None
    max_tokens: int = 200
    temperature: float = 0.2
    top_p: float = 0.9

    @field_validator("max_tokens")
    @classmethod
    def max_tokens_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_tokens must be >= 1")
        return v

    @field_validator("temperature")
    @classmethod
    def temperature_nonneg(cls, v: float) -> float:
        if v < 0:
            raise ValueError("temperature must be >= 0")
        return v

    @field_validator("top_p")
    @classmethod
    def top_p_range(cls, v: float) -> float:
        if not (0.0 <= v <= 1.0):
            raise ValueError("top_p must be in [0, 1]")
        return v

    def generation_params(self) -> GenerationParams:
        return GenerationParams(
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            top_p=self.top_p,
        )


class CompletionRequest(_SamplingFields):
    """Request body for the completions endpoint."""

    prompt: str

    @field_validator("prompt")
    @classmethod
    def prompt_nonempty(cls, v: str) -> str:
        if not v:
            raise ValueError("prompt must not be empty")
        return v


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: Literal["system", "user", "assistant"]
    content: str


class ChatCompletionRequest(_SamplingFields):
    """Request body for the chat completions endpoint."""

    messages: list[ChatMessage]
    system_prompt: str | None = None
    template: Literal["chatml", "llama", "gemma"] = "chatml"
    reserve: int = 200

    @field_validator("messages")
    @classmethod
    def messages_nonempty(cls, v: list[ChatMessage]) -> list[ChatMessage]:
        if not v:
            raise ValueError("messages must not be empty")
        return v

    @field_validator("reserve")
    @classmethod
    def reserve_nonneg(cls, v: int) -> int:
        if v < 0:
            raise ValueError("reserve must be >= 0")
        return v


class PreloadRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    model: str | None = None


class CancelRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    request_id: str | None = None


# ---------------------------------------------------------------------------
# SSE plumbing
# ---------------------------------------------------------------------------


def _event(name: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {"event": name, "data": orjson.dumps(payload).decode()}


def _stream(worker: SessionWorker, request: GenerationRequest) -> EventSourceResponse:
    """Submit ``request`` to the worker and relay its outputs as SSE events."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[StepOutput] = asyncio.Queue()

    def sink(output: StepOutput) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, output)

    try:
        worker.submit(request, sink)
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from None

    async def event_generator() -> AsyncGenerator[dict[str, Any]]:
        finished = False
        try:
            while True:
                output = await queue.get()

                if output.error is not None:
                    finished = True
                    yield _event("error", {"error": output.error, "id": output.request_id})
                    return

                if output.text_delta:
                    yield _event("token", {"token": output.text_delta, "id": output.request_id})

                if output.finished:
                    finished = True
                    total = output.prompt_tokens + output.completion_tokens
                    yield _event(
                        "done",
                        {
                            "id": output.request_id,
                            "finish_reason": output.finish_reason,
                            "usage": {
                                "prompt_tokens": output.prompt_tokens,
                                "completion_tokens": output.completion_tokens,
                                "total_tokens": total,
                            },
                            "tokens_per_second": output.tokens_per_second,
                        },
                    )
                    return
        finally:
            if not finished:
                logger.info("client went away, cancelling request %s", request.request_id)
                worker.cancel(request.request_id)

    return EventSourceResponse(event_generator())


def _build_routes(app: FastAPI, get_worker: Callable[[], SessionWorker]) -> None:
    """Register the HTTP routes; ``get_worker`` returns the live worker."""

    @app.post("/v1/completions")
    async def completions(body: CompletionRequest) -> EventSourceResponse:
        request = GenerationRequest(
            prompt=body.prompt,
            params=body.generation_params(),
            model_path=body.model,
            request_id=str(uuid.uuid4()),
        )
        return _stream(get_worker(), request)

    @app.post("/v1/chat/completions")
    async def chat_completions(body: ChatCompletionRequest) -> EventSourceResponse:
        chat = ChatPrompt(
            messages=[m.model_dump() for m in body.messages],
            system_prompt=body.system_prompt,
            model_type=body.template,
            reserve=body.reserve,
        )
        request = GenerationRequest(
            chat=chat,
            params=body.generation_params(),
            model_path=body.model,
            request_id=str(uuid.uuid4()),
        )
        return _stream(get_worker(), request)

    @app.post("/v1/models/preload")
    async def preload(body: PreloadRequest) -> dict[str, Any]:
        try:
            get_worker().preload(body.model)
        except RuntimeError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from None
        return {"status": "loading", "model": body.model}

    @app.post("/v1/cancel")
    async def cancel(body: CancelRequest) -> dict[str, Any]:
        get_worker().cancel(body.request_id)
        return {"status": "cancelled", "request_id": body.request_id}


# ---------------------------------------------------------------------------
# App factories
# ---------------------------------------------------------------------------


def create_app(config: EngineConfig, *, preload: bool = False) -> FastAPI:
    """Create an app whose worker loads ``config.model_path`` on demand."""
    worker_ref: list[SessionWorker] = []

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        worker = SessionWorker(config)
        worker_ref.append(worker)
        app.state.worker = worker
        if preload:
            worker.preload()
        try:
            yield
        finally:
            await asyncio.to_thread(worker.stop)

    app = FastAPI(lifespan=lifespan)
    _build_routes(app, lambda: worker_ref[0])
    return app


def create_app_with_worker(worker: SessionWorker) -> FastAPI:
    """Create an app around a pre-built worker (for testing)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        app.state.worker = worker
        yield

    app = FastAPI(lifespan=lifespan)
    _build_routes(app, lambda: worker)
    return app

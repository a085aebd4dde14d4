"""Engine: session state machine, sampling, and the handle and worker around it."""

from llmsession.engine.api import HandleId, HandleRegistry
from llmsession.engine.batch import Batch
from llmsession.engine.config import EngineConfig
from llmsession.engine.handle import EngineHandle
from llmsession.engine.sampler import SamplerCache, SamplerChain, SamplerSettings
from llmsession.engine.session import Session, SessionState
from llmsession.engine.stream import GenerationParams, StepOutput, stream_generate
from llmsession.engine.worker import ChatPrompt, GenerationRequest, SessionWorker

__all__ = [
    "Batch",
    "ChatPrompt",
    "EngineConfig",
    "EngineHandle",
    "GenerationParams",
    "GenerationRequest",
    "HandleId",
    "HandleRegistry",
    "SamplerCache",
    "SamplerChain",
    "SamplerSettings",
    "Session",
    "SessionState",
    "SessionWorker",
    "StepOutput",
    "stream_generate",
]

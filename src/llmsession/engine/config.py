"""Engine configuration."""

from __future__ import annotations

from dataclasses import dataclass

_VALID_DTYPES = {"float32", "bfloat16", "float16"}

# Turn-boundary / role-marker substrings that end generation when they show up
# in a decoded piece.  Tuned for ChatML-style templates.
DEFAULT_STOP_MARKERS: tuple[str, ...] = (
    "<|im_end|",
    "<|im_start|>",
    "<|user|>",
    "user\n",
)

DEFAULT_CONTEXT_SIZE = 1024
DEFAULT_THREAD_COUNT = 4
MAX_COMPUTE_BATCH = 128
MAX_MICRO_BATCH = 64


@dataclass
class EngineConfig:
    """Configuration for one engine handle.

    Non-positive ``context_size`` and ``thread_count`` are replaced by their
    defaults (1024 and 4) rather than rejected, so callers can pass ``0`` to
    mean "pick something sensible".

    Attributes:
        model_path: Local directory or HF Hub repo ID of the model.
        context_size: Context window size in tokens.
        thread_count: Intra-op threads used by the engine.
        use_mmap: Memory-map the weights instead of reading them into RAM.
        device: Torch device string.  Accelerator offload is off by default.
        dtype: Weight dtype (``"float32"``, ``"bfloat16"`` or ``"float16"``).
        safety_margin: Context reserved for generation and engine bookkeeping;
            prompts with ``tokens >= context_size - safety_margin`` are rejected.
        context_reserve: Positions kept free at the end of the window during
            generation.
        min_generation_limit: Lower bound for the per-session generation limit.
        penalty_last_n: Lookback window of the repetition penalty.
        repeat_penalty: Repetition penalty strength.
        top_k: Candidate set size before nucleus filtering.
        seed: Seed of the final categorical draw.
        stop_markers: Literal substrings that terminate generation.
    """

    model_path: str
    context_size: int = DEFAULT_CONTEXT_SIZE
    thread_count: int = DEFAULT_THREAD_COUNT
    use_mmap: bool = True
    device: str = "cpu"
    dtype: str = "float32"

    safety_margin: int = 128
    context_reserve: int = 4
    min_generation_limit: int = 16

    # Sampling pipeline constants.
    penalty_last_n: int = 64
    repeat_penalty: float = 1.2
    top_k: int = 40
    seed: int = 1234

    stop_markers: tuple[str, ...] = DEFAULT_STOP_MARKERS

    def __post_init__(self) -> None:
        if self.context_size <= 0:
            self.context_size = DEFAULT_CONTEXT_SIZE
        if self.thread_count <= 0:
            self.thread_count = DEFAULT_THREAD_COUNT
        self.stop_markers = tuple(self.stop_markers)
        self.validate()

    @property
    def n_batch(self) -> int:
        """Compute-batch size: the most tokens submitted in one decode call."""
        return min(MAX_COMPUTE_BATCH, self.context_size)

    @property
    def n_ubatch(self) -> int:
        """Micro-batch size the engine may split a compute batch into."""
        return min(MAX_MICRO_BATCH, self.context_size)

    def validate(self) -> None:
        """Validate configuration values, raising ``ValueError`` on invalid settings."""
        if not self.model_path:
            raise ValueError("model_path must not be empty")
        if self.dtype not in _VALID_DTYPES:
            raise ValueError(
                f"Unsupported dtype: {self.dtype!r}. Choose from {sorted(_VALID_DTYPES)}"
            )
        if self.safety_margin < 0:
            raise ValueError(f"safety_margin must be >= 0, got {self.safety_margin}")
        if self.context_reserve < 0:
            raise ValueError(f"context_reserve must be >= 0, got {self.context_reserve}")
        if self.min_generation_limit < 1:
            raise ValueError(
                f"min_generation_limit must be >= 1, got {self.min_generation_limit}"
            )
        if self.penalty_last_n < 0:
            raise ValueError(f"penalty_last_n must be >= 0, got {self.penalty_last_n}")
        if self.repeat_penalty <= 0.0:
            raise ValueError(f"repeat_penalty must be > 0.0, got {self.repeat_penalty}")
        if self.top_k < 1:
            raise ValueError(f"top_k must be >= 1, got {self.top_k}")
        if any(not marker for marker in self.stop_markers):
            raise ValueError("stop_markers must not contain empty strings")

"""PyTorch + HuggingFace ``transformers`` implementation of the engine protocol."""

from __future__ import annotations

import gc
import logging

import torch
from torch import Tensor, nn
from transformers import AutoModelForCausalLM, DynamicCache

from llmsession.engine.batch import Batch
from llmsession.engine.config import EngineConfig
from llmsession.errors import ContextInitError, ModelLoadError
from llmsession.loader.tokenizer import Tokenizer

logger = logging.getLogger(__name__)

_DTYPES: dict[str, torch.dtype] = {
    "float32": torch.float32,
    "bfloat16": torch.bfloat16,
    "float16": torch.float16,
}

# Decode status codes (0 = success).
DECODE_NO_SPACE = 1
DECODE_INVALID_BATCH = -1
DECODE_COMPUTE_FAILED = -3


class TransformersBackend:
    """Single-sequence engine over a causal LM and a ``DynamicCache``.

    The context is the model's KV cache plus the logits kept from the most
    recent decode.  Positions submitted to :meth:`decode` must extend the
    cache contiguously; anything else is rejected with a non-zero status,
    which keeps the caller's position counters and the cache in lockstep.

    Args:
        model: A loaded causal language model.
        tokenizer: Tokenizer for the model.
        n_ctx: Context window size in tokens.
        n_batch: Largest batch accepted by one :meth:`decode` call.
        n_ubatch: Tokens per forward pass inside one decode call.
        device: Torch device the model runs on.
    """

    def __init__(
        self,
        model: nn.Module,
        tokenizer: Tokenizer,
        *,
        n_ctx: int,
        n_batch: int,
        n_ubatch: int,
        device: str = "cpu",
    ) -> None:
        self._model: nn.Module | None = model
        self._tokenizer: Tokenizer | None = tokenizer
        self._n_ctx = n_ctx
        self._n_batch = n_batch
        self._n_ubatch = n_ubatch
        self._device = torch.device(device)

        self._model.to(self._device)
        self._model.eval()

        max_positions = getattr(getattr(model, "config", None), "max_position_embeddings", None)
        if max_positions is not None and n_ctx > max_positions:
            logger.warning(
                "context size %d exceeds the model's trained context %d", n_ctx, max_positions
            )

        self._cache: DynamicCache | None = DynamicCache()
        self._n_past = 0
        self._logits: Tensor | None = None

    @classmethod
    def load(cls, config: EngineConfig) -> TransformersBackend:
        """Load model + tokenizer from ``config.model_path`` and create the context.

        Raises:
            ModelLoadError: If the tokenizer or weights cannot be loaded.
            ContextInitError: If the context cannot be created; the model is
                released before this is raised.
        """
        try:
            tokenizer = Tokenizer(config.model_path)
            model = AutoModelForCausalLM.from_pretrained(
                config.model_path,
                torch_dtype=_DTYPES[config.dtype],
                low_cpu_mem_usage=config.use_mmap,
            )
        except Exception as exc:
            raise ModelLoadError(f"failed to load model from {config.model_path!r}: {exc}") from exc

        try:
            return cls(
                model,
                tokenizer,
                n_ctx=config.context_size,
                n_batch=config.n_batch,
                n_ubatch=config.n_ubatch,
                device=config.device,
            )
        except Exception as exc:
            del model
            gc.collect()
            raise ContextInitError(f"failed to create context: {exc}") from exc

    # ------------------------------------------------------------------
    # InferenceBackend
    # ------------------------------------------------------------------

    @property
    def n_ctx(self) -> int:
        return self._n_ctx

    @property
    def n_past(self) -> int:
        """Positions currently held by the cache."""
        return self._n_past

    def tokenize(
        self,
        text: str,
        n_tokens_max: int,
        *,
        add_special: bool,
        parse_special: bool,
    ) -> tuple[int, list[int]]:
        return self._vocab().tokenize(
            text, n_tokens_max, add_special=add_special, parse_special=parse_special
        )

    def memory_clear(self) -> None:
        self._ensure_context()
        self._cache = DynamicCache()
        self._n_past = 0
        self._logits = None

    @torch.inference_mode()
    def decode(self, batch: Batch) -> int:
        model = self._ensure_context()
        n = batch.n_tokens
        if n == 0 or n > self._n_batch:
            logger.error("decode: batch of %d tokens outside [1, %d]", n, self._n_batch)
            return DECODE_INVALID_BATCH
        if bool((batch.seq_id[:n] != 0).any()):
            logger.error("decode: only sequence 0 is supported")
            return DECODE_INVALID_BATCH

        pos = batch.pos[:n]
        expected = torch.arange(self._n_past, self._n_past + n, dtype=pos.dtype)
        if not torch.equal(pos, expected):
            logger.error(
                "decode: positions %s do not continue the cache at %d",
                pos.tolist(),
                self._n_past,
            )
            return DECODE_INVALID_BATCH
        if self._n_past + n > self._n_ctx:
            logger.error("decode: no space left in context (%d + %d > %d)", self._n_past, n, self._n_ctx)
            return DECODE_NO_SPACE

        keep = batch.logits[:n]
        kept: list[Tensor] = []
        cache = self._cache
        try:
            for start in range(0, n, self._n_ubatch):
                end = min(start + self._n_ubatch, n)
                positions = pos[start:end].to(self._device)
                outputs = model(
                    input_ids=batch.token[start:end].unsqueeze(0).to(self._device),
                    position_ids=positions.unsqueeze(0),
                    cache_position=positions,
                    past_key_values=cache,
                    use_cache=True,
                )
                cache = outputs.past_key_values
                rows = keep[start:end].nonzero(as_tuple=True)[0]
                if rows.numel() > 0:
                    kept.append(outputs.logits[0, rows.to(self._device), :].float().cpu())
        except (RuntimeError, ValueError, IndexError) as exc:
            logger.error("decode: forward pass failed: %s", exc)
            return DECODE_COMPUTE_FAILED

        self._cache = cache
        self._n_past += n
        self._logits = torch.cat(kept, dim=0) if kept else None
        return 0

    def get_logits(self, i: int = -1) -> Tensor:
        if self._logits is None or self._logits.shape[0] == 0:
            raise RuntimeError("no logits available: the last decode emitted none")
        return self._logits[i]

    def token_to_piece(self, token_id: int, *, special: bool = True) -> bytes:
        return self._vocab().token_to_piece(token_id, special=special)

    def is_eog(self, token_id: int) -> bool:
        return self._vocab().is_eog(token_id)

    def free_context(self) -> None:
        self._cache = None
        self._logits = None
        self._n_past = 0

    def free_model(self) -> None:
        self._model = None
        self._tokenizer = None
        gc.collect()
        if self._device.type == "cuda":
            torch.cuda.empty_cache()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _vocab(self) -> Tokenizer:
        if self._tokenizer is None:
            raise RuntimeError("model has been released")
        return self._tokenizer

    def _ensure_context(self) -> nn.Module:
        if self._model is None or self._cache is None:
            raise RuntimeError("context has been released")
        return self._model

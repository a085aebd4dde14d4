"""Sampling transforms, the sampler chain, and the configuration-keyed sampler cache."""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass

import torch
import torch.nn.functional as F
from torch import Tensor

from llmsession.engine.config import EngineConfig
from llmsession.errors import SamplerInitError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Transforms, in pipeline order
# ---------------------------------------------------------------------------


def apply_repetition_penalty(
    logits: Tensor,
    token_ids: list[int],
    penalty: float,
    *,
    frequency: float = 0.0,
    presence: float = 0.0,
) -> Tensor:
    """Push down the logits of tokens seen in ``token_ids``.

    A seen token's logit is divided by ``penalty`` when positive and
    multiplied by it otherwise, once regardless of how often it occurs; then
    ``count * frequency + presence`` is subtracted.  Ids outside the
    vocabulary are ignored.
    """
    vocab = logits.shape[-1]
    window = [t for t in token_ids if 0 <= t < vocab]
    if not window or (penalty == 1.0 and frequency == 0.0 and presence == 0.0):
        return logits

    counts = torch.bincount(
        torch.tensor(window, dtype=torch.long, device=logits.device), minlength=vocab
    ).to(logits.dtype)
    seen = counts > 0
    scaled = torch.where(logits > 0, logits / penalty, logits * penalty)
    return torch.where(seen, scaled - counts * frequency - presence, logits)


def apply_temperature(logits: Tensor, temperature: float) -> Tensor:
    """Divide logits by ``temperature``; ``<= 0`` leaves only the argmax finite."""
    if temperature <= 0.0:
        best = int(torch.argmax(logits))
        greedy = torch.full_like(logits, float("-inf"))
        greedy[best] = logits[best]
        return greedy
    if temperature != 1.0:
        return logits / temperature
    return logits


def apply_top_k(logits: Tensor, k: int) -> Tensor:
    """Mask everything but the ``k`` largest logits to ``-inf``."""
    if k >= logits.shape[-1]:
        return logits
    drop = torch.ones_like(logits, dtype=torch.bool)
    drop[torch.topk(logits, k).indices] = False
    return logits.masked_fill(drop, float("-inf"))


def apply_top_p(logits: Tensor, p: float, min_keep: int = 1) -> Tensor:
    """Nucleus filter over the probability mass of ``logits``.

    Candidates are taken in descending probability until the mass *before*
    a candidate reaches ``p``; the candidate that crosses ``p`` survives.  At
    least ``min_keep`` candidates always survive.
    """
    if p >= 1.0:
        return logits

    probs = F.softmax(logits, dim=-1)
    ordered, order = torch.sort(probs, descending=True)
    mass_before = torch.cumsum(ordered, dim=-1) - ordered
    keep = mass_before < p
    keep[:min_keep] = True
    drop = torch.ones_like(logits, dtype=torch.bool)
    drop[order[keep]] = False
    return logits.masked_fill(drop, float("-inf"))


# ---------------------------------------------------------------------------
# Sampler chain
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SamplerSettings:
    """Everything a :class:`SamplerChain` is built from.

    ``temperature`` and ``top_p`` vary per request; the remaining fields
    come from :class:`EngineConfig` and are fixed for a handle's lifetime.
    """

    temperature: float
    top_p: float
    top_k: int = 40
    penalty_last_n: int = 64
    repeat_penalty: float = 1.2
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    seed: int = 1234

    @classmethod
    def from_config(cls, config: EngineConfig, temperature: float, top_p: float) -> SamplerSettings:
        return cls(
            temperature=temperature,
            top_p=top_p,
            top_k=config.top_k,
            penalty_last_n=config.penalty_last_n,
            repeat_penalty=config.repeat_penalty,
            seed=config.seed,
        )


class SamplerChain:
    """Ordered sampling pipeline ending in a seeded categorical draw.

    Stage order: repetition penalty -> temperature -> top-k -> top-p -> draw.
    Penalties see raw logits before temperature reshapes them, and top-k
    bounds the candidate set before the nucleus is computed.

    The chain carries transient state between draws: the penalty window of
    recently accepted tokens and the RNG.  :meth:`reset` restores both to
    their freshly-built values without rebuilding the chain.

    Raises:
        SamplerInitError: If any stage rejects its parameters.
    """

    STAGES: tuple[str, ...] = ("penalties", "temperature", "top_k", "top_p", "dist")

    def __init__(self, settings: SamplerSettings) -> None:
        if not math.isfinite(settings.temperature):
            raise SamplerInitError(f"temperature stage: non-finite temperature {settings.temperature}")
        if not math.isfinite(settings.top_p) or not (0.0 <= settings.top_p <= 1.0):
            raise SamplerInitError(f"top_p stage: top_p must be in [0.0, 1.0], got {settings.top_p}")
        if settings.top_k < 1:
            raise SamplerInitError(f"top_k stage: k must be >= 1, got {settings.top_k}")
        if settings.penalty_last_n < 0 or settings.repeat_penalty <= 0.0:
            raise SamplerInitError(
                f"penalties stage: invalid window {settings.penalty_last_n} "
                f"or strength {settings.repeat_penalty}"
            )
        try:
            generator = torch.Generator(device="cpu")
            generator.manual_seed(settings.seed)
        except RuntimeError as exc:
            raise SamplerInitError(f"dist stage: cannot seed generator: {exc}") from exc

        self.settings = settings
        self._generator = generator
        self._history: deque[int] = deque(maxlen=settings.penalty_last_n)

    @property
    def history(self) -> list[int]:
        """Tokens currently inside the penalty window, oldest first."""
        return list(self._history)

    def apply(self, logits: Tensor) -> Tensor:
        """Run every filtering stage (not the draw) over ``logits``."""
        s = self.settings
        logits = logits.detach().to(device="cpu", dtype=torch.float32).reshape(-1)
        logits = apply_repetition_penalty(
            logits,
            list(self._history),
            s.repeat_penalty,
            frequency=s.frequency_penalty,
            presence=s.presence_penalty,
        )
        logits = apply_temperature(logits, s.temperature)
        logits = apply_top_k(logits, s.top_k)
        logits = apply_top_p(logits, s.top_p, min_keep=1)
        return logits

    def sample(self, logits: Tensor) -> int:
        """Draw one token id from ``logits`` and record it in the penalty window."""
        filtered = self.apply(logits)
        probs = F.softmax(filtered, dim=-1)
        token = int(
            torch.multinomial(probs.unsqueeze(0), num_samples=1, generator=self._generator).item()
        )
        self.accept(token)
        return token

    def accept(self, token_id: int) -> None:
        self._history.append(token_id)

    def reset(self) -> None:
        """Clear the penalty window and reseed the RNG."""
        self._history.clear()
        self._generator.manual_seed(self.settings.seed)


# ---------------------------------------------------------------------------
# Sampler cache
# ---------------------------------------------------------------------------


class SamplerCache:
    """Holds the current :class:`SamplerChain` and the parameters it was built from.

    :meth:`configure` rebuilds only when ``(temperature, top_p)`` differs from
    the cached pair (exact comparison) or nothing has been built yet.
    Otherwise the cached chain is reset so repetition penalties from a
    previous request do not bleed into the next one.

    Args:
        config: Engine configuration supplying the fixed pipeline constants.
    """

    def __init__(self, config: EngineConfig) -> None:
        self._config = config
        self._chain: SamplerChain | None = None
        self._temperature: float | None = None
        self._top_p: float | None = None
        self.build_count = 0

    @property
    def chain(self) -> SamplerChain | None:
        return self._chain

    def configure(self, temperature: float, top_p: float) -> SamplerChain:
        """Return a chain for ``(temperature, top_p)``, rebuilding only on change.

        Raises:
            SamplerInitError: If a new chain cannot be built.  The previous
                chain has already been discarded at that point.
        """
        if (
            self._chain is not None
            and temperature == self._temperature
            and top_p == self._top_p
        ):
            self._chain.reset()
            return self._chain

        self._chain = None
        self._temperature = None
        self._top_p = None

        chain = SamplerChain(SamplerSettings.from_config(self._config, temperature, top_p))
        self._chain = chain
        self._temperature = temperature
        self._top_p = top_p
        self.build_count += 1
        logger.debug("built sampler chain: temperature=%s top_p=%s", temperature, top_p)
        return chain

    def reset(self) -> None:
        """Reset the cached chain's transient state, if a chain exists."""
        if self._chain is not None:
            self._chain.reset()

    def close(self) -> None:
        self._chain = None
        self._temperature = None
        self._top_p = None

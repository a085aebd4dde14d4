"""Unit tests for the sampling transforms, the sampler chain, and the sampler cache."""

from __future__ import annotations

import pytest
import torch

from llmsession.engine.config import EngineConfig
from llmsession.engine.sampler import (
    SamplerCache,
    SamplerChain,
    SamplerSettings,
    apply_repetition_penalty,
    apply_temperature,
    apply_top_k,
    apply_top_p,
)
from llmsession.errors import SamplerInitError

# ---------------------------------------------------------------------------
# Temperature scaling
# ---------------------------------------------------------------------------


class TestTemperature:
    def test_identity_at_one(self) -> None:
        logits = torch.tensor([1.0, 2.0, 3.0])
        result = apply_temperature(logits, 1.0)
        assert torch.equal(result, logits)

    def test_halves_at_two(self) -> None:
        logits = torch.tensor([2.0, 4.0, -6.0])
        result = apply_temperature(logits, 2.0)
        expected = torch.tensor([1.0, 2.0, -3.0])
        assert torch.allclose(result, expected)

    def test_zero_keeps_only_argmax(self) -> None:
        logits = torch.tensor([1.0, 5.0, 3.0])
        result = apply_temperature(logits, 0.0)
        assert result[1] == 5.0
        assert result[0] == float("-inf")
        assert result[2] == float("-inf")

    def test_negative_is_greedy(self) -> None:
        logits = torch.tensor([4.0, 1.0])
        result = apply_temperature(logits, -1.0)
        assert torch.isfinite(result).tolist() == [True, False]


# ---------------------------------------------------------------------------
# Top-k / top-p
# ---------------------------------------------------------------------------


class TestCandidateFilters:
    def test_top_k_keeps_largest(self) -> None:
        logits = torch.tensor([1.0, 5.0, 3.0, 9.0, 7.0])
        result = apply_top_k(logits, 2)
        assert torch.isfinite(result).tolist() == [False, False, False, True, True]

    def test_top_k_larger_than_vocab(self) -> None:
        logits = torch.randn(8)
        assert torch.equal(apply_top_k(logits, 40), logits)

    def test_top_p_one_is_noop(self) -> None:
        logits = torch.randn(50)
        assert torch.equal(apply_top_p(logits, 1.0), logits)

    def test_top_p_nucleus(self) -> None:
        # Softmax([2, 1, 0, -1]) ~ [0.64, 0.24, 0.09, 0.03]; 0.9 needs three tokens.
        logits = torch.tensor([2.0, 1.0, 0.0, -1.0])
        result = apply_top_p(logits, 0.9)
        assert int(torch.isfinite(result).sum()) == 3

    def test_top_p_zero_keeps_min_keep(self) -> None:
        logits = torch.tensor([0.5, 3.0, 1.0])
        result = apply_top_p(logits, 0.0, min_keep=1)
        assert torch.isfinite(result).tolist() == [False, True, False]


# ---------------------------------------------------------------------------
# Repetition penalty
# ---------------------------------------------------------------------------


class TestRepetitionPenalty:
    def test_positive_divided_negative_multiplied(self) -> None:
        logits = torch.tensor([4.0, -4.0, 1.0])
        result = apply_repetition_penalty(logits, [0, 1], 2.0)
        assert result.tolist() == pytest.approx([2.0, -8.0, 1.0])

    def test_repeats_penalized_once(self) -> None:
        logits = torch.tensor([6.0, 1.0])
        result = apply_repetition_penalty(logits, [0, 0, 0], 1.2)
        assert result[0].item() == pytest.approx(5.0)

    def test_frequency_and_presence(self) -> None:
        logits = torch.tensor([3.0, 3.0])
        result = apply_repetition_penalty(logits, [0, 0, 1], 1.0, frequency=0.5, presence=1.0)
        assert result.tolist() == pytest.approx([1.0, 1.5])

    def test_out_of_vocab_ids_ignored(self) -> None:
        logits = torch.tensor([1.0, 2.0])
        assert torch.equal(apply_repetition_penalty(logits, [7, -1], 2.0), logits)


# ---------------------------------------------------------------------------
# SamplerChain
# ---------------------------------------------------------------------------


class TestSamplerChain:
    def test_stage_order(self) -> None:
        assert SamplerChain.STAGES == ("penalties", "temperature", "top_k", "top_p", "dist")

    def test_rejects_bad_parameters(self) -> None:
        with pytest.raises(SamplerInitError, match="temperature"):
            SamplerChain(SamplerSettings(temperature=float("nan"), top_p=0.9))
        with pytest.raises(SamplerInitError, match="top_p"):
            SamplerChain(SamplerSettings(temperature=0.2, top_p=-0.1))
        with pytest.raises(SamplerInitError, match="top_k"):
            SamplerChain(SamplerSettings(temperature=0.2, top_p=0.9, top_k=0))

    def test_sample_records_history(self) -> None:
        chain = SamplerChain(SamplerSettings(temperature=0.0, top_p=1.0, penalty_last_n=2))
        for token in (1, 2, 3):
            logits = torch.zeros(8)
            logits[token] = 10.0
            assert chain.sample(logits) == token
        assert chain.history == [2, 3]

    def test_penalty_changes_greedy_choice(self) -> None:
        chain = SamplerChain(SamplerSettings(temperature=0.0, top_p=1.0, repeat_penalty=100.0))
        chain.accept(1)
        logits = torch.tensor([1.0, 5.0, 4.9])
        assert chain.sample(logits) == 2

    def test_seeded_draws_repeat_after_reset(self) -> None:
        chain = SamplerChain(SamplerSettings(temperature=1.0, top_p=1.0, top_k=1000, repeat_penalty=1.0))
        logits = torch.zeros(1000)
        first = [chain.sample(logits) for _ in range(5)]
        chain.reset()
        assert chain.history == []
        second = [chain.sample(logits) for _ in range(5)]
        assert first == second

    def test_accepts_half_precision_logits(self) -> None:
        chain = SamplerChain(SamplerSettings(temperature=0.2, top_p=0.9))
        logits = torch.zeros(16, dtype=torch.float16)
        logits[4] = 20.0
        assert chain.sample(logits) == 4


# ---------------------------------------------------------------------------
# SamplerCache
# ---------------------------------------------------------------------------


class TestSamplerCache:
    def _cache(self) -> SamplerCache:
        return SamplerCache(EngineConfig(model_path="m"))

    def test_settings_from_config(self) -> None:
        chain = self._cache().configure(0.2, 0.9)
        assert chain.settings == SamplerSettings(
            temperature=0.2,
            top_p=0.9,
            top_k=40,
            penalty_last_n=64,
            repeat_penalty=1.2,
            seed=1234,
        )

    def test_same_parameters_reuse_chain(self) -> None:
        cache = self._cache()
        chain = cache.configure(0.2, 0.9)
        chain.accept(3)
        assert cache.configure(0.2, 0.9) is chain
        assert chain.history == []
        assert cache.build_count == 1

    def test_change_rebuilds_once(self) -> None:
        cache = self._cache()
        first = cache.configure(0.2, 0.9)
        second = cache.configure(0.2, 0.95)
        assert second is not first
        cache.configure(0.2, 0.95)
        assert cache.build_count == 2

    def test_failed_build_discards_previous(self) -> None:
        cache = self._cache()
        cache.configure(0.2, 0.9)
        with pytest.raises(SamplerInitError):
            cache.configure(0.2, 3.0)
        assert cache.chain is None
        cache.configure(0.2, 0.9)
        assert cache.build_count == 2

    def test_reset_without_chain(self) -> None:
        cache = self._cache()
        cache.reset()
        assert cache.chain is None

    def test_close(self) -> None:
        cache = self._cache()
        cache.configure(0.2, 0.9)
        cache.close()
        assert cache.chain is None

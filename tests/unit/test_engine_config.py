"""Unit tests for EngineConfig."""

from __future__ import annotations

import pytest

from llmsession.engine.config import DEFAULT_STOP_MARKERS, EngineConfig


class TestEngineConfigDefaults:
    def test_defaults(self) -> None:
        cfg = EngineConfig(model_path="Qwen/Qwen2.5-0.5B-Instruct")
        assert cfg.model_path == "Qwen/Qwen2.5-0.5B-Instruct"
        assert cfg.context_size == 1024
        assert cfg.thread_count == 4
        assert cfg.use_mmap is True
        assert cfg.device == "cpu"
        assert cfg.dtype == "float32"
        assert cfg.safety_margin == 128
        assert cfg.context_reserve == 4
        assert cfg.min_generation_limit == 16
        assert cfg.top_k == 40
        assert cfg.seed == 1234
        assert cfg.stop_markers == DEFAULT_STOP_MARKERS

    def test_default_stop_markers(self) -> None:
        assert DEFAULT_STOP_MARKERS == ("<|im_end|", "<|im_start|>", "<|user|>", "user\n")

    @pytest.mark.parametrize("size", [0, -5])
    def test_non_positive_context_size_clamped(self, size: int) -> None:
        assert EngineConfig(model_path="m", context_size=size).context_size == 1024

    @pytest.mark.parametrize("threads", [0, -1])
    def test_non_positive_threads_clamped(self, threads: int) -> None:
        assert EngineConfig(model_path="m", thread_count=threads).thread_count == 4

    def test_stop_markers_normalized_to_tuple(self) -> None:
        cfg = EngineConfig(model_path="m", stop_markers=["</s>"])  # type: ignore[arg-type]
        assert cfg.stop_markers == ("</s>",)


class TestBatchSizes:
    def test_large_context(self) -> None:
        cfg = EngineConfig(model_path="m", context_size=4096)
        assert cfg.n_batch == 128
        assert cfg.n_ubatch == 64

    def test_small_context(self) -> None:
        cfg = EngineConfig(model_path="m", context_size=48)
        assert cfg.n_batch == 48
        assert cfg.n_ubatch == 48


class TestEngineConfigValidation:
    def test_empty_model_path(self) -> None:
        with pytest.raises(ValueError, match="model_path"):
            EngineConfig(model_path="")

    def test_invalid_dtype(self) -> None:
        with pytest.raises(ValueError, match="dtype"):
            EngineConfig(model_path="m", dtype="int8")

    def test_negative_safety_margin(self) -> None:
        with pytest.raises(ValueError, match="safety_margin"):
            EngineConfig(model_path="m", safety_margin=-1)

    def test_zero_min_generation_limit(self) -> None:
        with pytest.raises(ValueError, match="min_generation_limit"):
            EngineConfig(model_path="m", min_generation_limit=0)

    def test_zero_repeat_penalty(self) -> None:
        with pytest.raises(ValueError, match="repeat_penalty"):
            EngineConfig(model_path="m", repeat_penalty=0.0)

    def test_empty_stop_marker(self) -> None:
        with pytest.raises(ValueError, match="stop_markers"):
            EngineConfig(model_path="m", stop_markers=("",))

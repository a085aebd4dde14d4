"""Tests for chat template rendering and budgeted prompt construction."""

from __future__ import annotations

import pytest

from llmsession.loader.chat_template import build_budgeted_prompt, render_chat_template


def _words(text: str) -> int:
    """Stand-in token counter: one token per whitespace-separated word."""
    return len(text.split())


# ---------------------------------------------------------------------------
# ChatML
# ---------------------------------------------------------------------------


class TestChatMLTemplate:
    def test_single_user_message(self) -> None:
        result = render_chat_template([{"role": "user", "content": "Hello"}])
        assert result == "<|im_start|>user\nHello\n<|im_end|>\n<|im_start|>assistant\n"

    def test_no_generation_prompt(self) -> None:
        result = render_chat_template(
            [{"role": "user", "content": "Hello"}], add_generation_prompt=False
        )
        assert result == "<|im_start|>user\nHello\n<|im_end|>\n"

    def test_empty_messages_only_header(self) -> None:
        assert render_chat_template([]) == "<|im_start|>assistant\n"


# ---------------------------------------------------------------------------
# Llama 3 / Gemma 3
# ---------------------------------------------------------------------------


class TestOtherTemplates:
    def test_llama_turns(self) -> None:
        messages = [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hi"},
        ]
        result = render_chat_template(messages, "llama")
        assert result.startswith("<|begin_of_text|><|start_header_id|>system<|end_header_id|>")
        assert "Hi<|eot_id|>" in result
        assert result.endswith("<|start_header_id|>assistant<|end_header_id|>\n\n")

    def test_gemma_folds_system_into_first_user_turn(self) -> None:
        messages = [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello"},
        ]
        result = render_chat_template(messages, "gemma")
        assert result == (
            "<bos><start_of_turn>user\nBe brief.\n\nHi<end_of_turn>\n"
            "<start_of_turn>model\nHello<end_of_turn>\n"
            "<start_of_turn>model\n"
        )


class TestErrors:
    def test_unknown_model_type(self) -> None:
        with pytest.raises(ValueError, match="unsupported chat format"):
            render_chat_template([{"role": "user", "content": "x"}], "mistral")

    def test_unknown_role(self) -> None:
        with pytest.raises(ValueError, match="role"):
            render_chat_template([{"role": "tool", "content": "x"}])


# ---------------------------------------------------------------------------
# Budgeted prompts
# ---------------------------------------------------------------------------


class TestBudgetedPrompt:
    def test_empty_messages(self) -> None:
        assert build_budgeted_prompt([], _words, system_prompt="sys") == ""

    def test_everything_fits(self) -> None:
        messages = [
            {"role": "user", "content": "first question"},
            {"role": "assistant", "content": "first answer"},
            {"role": "user", "content": "second question"},
        ]
        result = build_budgeted_prompt(messages, _words, system_prompt="be nice")
        assert result == render_chat_template(
            [{"role": "system", "content": "be nice"}, *messages]
        )

    def test_oldest_messages_dropped(self) -> None:
        # Each rendered message costs 3 "tokens": "<|im_start|>role\nX", ..., "<|im_end|>".
        messages = [{"role": "user", "content": f"m{i}"} for i in range(10)]
        result = build_budgeted_prompt(messages, _words, context_size=20, reserve=10)
        assert "m9" in result
        assert "m7" in result
        assert "m6" not in result
        assert result.index("m7") < result.index("m9")
        assert result.endswith("<|im_start|>assistant\n")

    def test_system_prompt_always_included(self) -> None:
        messages = [{"role": "user", "content": "hello there"}]
        system = " ".join(["word"] * 50)
        result = build_budgeted_prompt(
            messages, _words, system_prompt=system, context_size=20, reserve=10
        )
        assert result.startswith("<|im_start|>system\n" + system)
        assert "hello there" not in result

    def test_system_messages_in_history_ignored(self) -> None:
        messages = [
            {"role": "system", "content": "old system"},
            {"role": "user", "content": "hi"},
        ]
        result = build_budgeted_prompt(messages, _words, system_prompt="new system")
        assert "old system" not in result
        assert "new system" in result

    def test_negative_count_stops(self) -> None:
        messages = [{"role": "user", "content": "a"}, {"role": "user", "content": "b"}]
        result = build_budgeted_prompt(messages, lambda text: -1)
        assert result == "<|im_start|>assistant\n"

    def test_other_template(self) -> None:
        messages = [{"role": "user", "content": "hi"}]
        result = build_budgeted_prompt(messages, _words, model_type="llama")
        assert result.startswith("<|begin_of_text|>")

"""Vocabulary access over a HuggingFace tokenizer.

The engine needs three things from the vocabulary: capacity-bounded
tokenization, the bytes of a single token, and whether a token ends
generation.  Everything else about ``transformers`` stays behind this class.
"""

from __future__ import annotations

import re

from tokenizers import decoders
from transformers import AutoTokenizer, PreTrainedTokenizerBase
from transformers.models.gpt2.tokenization_gpt2 import bytes_to_unicode

# Added-vocabulary entries treated as end-of-generation alongside the EOS id.
END_OF_TURN_TOKENS: frozenset[str] = frozenset(
    {
        "<|im_end|>",  # ChatML
        "<|endoftext|>",
        "<|eot_id|>",  # Llama 3
        "<|end_of_turn|>",
        "<end_of_turn>",  # Gemma
    }
)

# SentencePiece byte-fallback token, e.g. ``<0xE9>``.
_BYTE_TOKEN = re.compile(r"<0x([0-9A-Fa-f]{2})>")
_SP_SPACE = "▁"


class Tokenizer:
    """Engine-facing vocabulary for the model at ``model_path``.

    Pieces are the raw bytes a token stands for, so a token holding part of
    a multi-byte character yields just those bytes.  Byte-level BPE
    vocabularies (GPT-2 style) are mapped back through the byte alphabet;
    SentencePiece vocabularies through ``<0xNN>`` byte tokens and ``▁``.
    Added and special tokens render through the tokenizer's own decoder.

    Args:
        model_path: Local directory or hub id holding the tokenizer files.
    """

    def __init__(self, model_path: str) -> None:
        self._hf: PreTrainedTokenizerBase = AutoTokenizer.from_pretrained(model_path)
        self.eog_token_ids: frozenset[int] = self._resolve_eog_ids()
        self._control_ids = frozenset(getattr(self._hf, "all_special_ids", ())) | frozenset(
            getattr(self._hf, "added_tokens_encoder", {}).values()
        )
        self._byte_decoder: dict[str, int] | None = None
        if self._is_byte_level():
            self._byte_decoder = {char: byte for byte, char in bytes_to_unicode().items()}

    def encode(self, text: str, *, add_special: bool, parse_special: bool) -> list[int]:
        """Token ids for ``text``.

        ``parse_special`` controls whether control-token text such as
        ``<|im_start|>`` maps to the control token or is split as plain text.
        """
        return self._hf.encode(
            text,
            add_special_tokens=add_special,
            split_special_tokens=not parse_special,
        )

    def tokenize(
        self,
        text: str,
        n_tokens_max: int,
        *,
        add_special: bool,
        parse_special: bool,
    ) -> tuple[int, list[int]]:
        """Tokenize into at most ``n_tokens_max`` ids.

        Returns ``(-required, [])`` when the result would not fit.
        """
        ids = self.encode(text, add_special=add_special, parse_special=parse_special)
        if len(ids) > n_tokens_max:
            return -len(ids), []
        return len(ids), ids

    def token_to_piece(self, token_id: int, *, special: bool = True) -> bytes:
        """Raw bytes of one token; control tokens are empty unless ``special``."""
        if token_id in self._control_ids:
            text = self._hf.decode([token_id], skip_special_tokens=not special)
            assert isinstance(text, str)
            return text.encode("utf-8")

        token = self._hf.convert_ids_to_tokens(token_id)
        if token is None:
            return b""
        if self._byte_decoder is not None:
            out = bytearray()
            for char in token:
                byte = self._byte_decoder.get(char)
                if byte is None:
                    out += char.encode("utf-8")
                else:
                    out.append(byte)
            return bytes(out)
        match = _BYTE_TOKEN.fullmatch(token)
        if match:
            return bytes([int(match.group(1), 16)])
        return token.replace(_SP_SPACE, " ").encode("utf-8")

    def is_eog(self, token_id: int) -> bool:
        return token_id in self.eog_token_ids

    def _is_byte_level(self) -> bool:
        backend = getattr(self._hf, "backend_tokenizer", None)
        return isinstance(getattr(backend, "decoder", None), decoders.ByteLevel)

    def _resolve_eog_ids(self) -> frozenset[int]:
        ids = {
            token_id
            for name, token_id in getattr(self._hf, "added_tokens_encoder", {}).items()
            if name in END_OF_TURN_TOKENS
        }
        if self._hf.eos_token_id is not None:
            ids.add(self._hf.eos_token_id)
        return frozenset(ids)

"""Tokenizer adapter over a HuggingFace ``tokenizers`` vocabulary."""

import logging
from pathlib import Path

from tokenizers import Tokenizer

from vocllm.errors import ModelLoadError

logger = logging.getLogger(__name__)

_REPLACEMENT_CHAR = "�"


class TokenizerAdapter:
    """Encode/decode capability consumed by the prompt builder and engine."""

    def __init__(self, tokenizer: Tokenizer) -> None:
        self._tokenizer = tokenizer

    @classmethod
    def from_file(cls, path: str | Path) -> "TokenizerAdapter":
        """Load a ``tokenizer.json`` file.

        Raises:
            ModelLoadError: If the file is missing or cannot be parsed.
        """
        path = Path(path)
        if not path.is_file():
            raise ModelLoadError(f"Tokenizer file not found: {path}")
        try:
            tokenizer = Tokenizer.from_file(str(path))
        except Exception as exc:
            raise ModelLoadError(f"Failed to load tokenizer {path}: {exc}") from exc
        logger.info("Loaded tokenizer %s (%d entries)", path, tokenizer.get_vocab_size())
        return cls(tokenizer)

    @property
    def vocab_size(self) -> int:
        return self._tokenizer.get_vocab_size()

    def encode(self, text: str) -> list[int]:
        """Encode text without adding BOS/EOS; special tokens in the text are kept."""
        return self._tokenizer.encode(text, add_special_tokens=False).ids

    def decode(self, tokens: list[int], skip_special_tokens: bool = True) -> str:
        return self._tokenizer.decode(list(tokens), skip_special_tokens=skip_special_tokens)

    def token_id(self, token: str) -> int | None:
        return self._tokenizer.token_to_id(token)

    def decoder(self) -> "IncrementalDecoder":
        return IncrementalDecoder(self)


class IncrementalDecoder:
    """Turns a growing token sequence into text deltas.

    Only the tokens after ``prefix_offset`` are re-decoded on each push, so
    the cost per token stays constant. A delta ending in U+FFFD is held back
    until the following tokens complete the multi-byte character.
    """

    def __init__(self, tokenizer: TokenizerAdapter) -> None:
        self._tokenizer = tokenizer
        self.tokens: list[int] = []
        self._prefix_offset = 0
        self._read_offset = 0

    def push(self, token: int) -> str:
        self.tokens.append(token)
        prefix_text = self._tokenizer.decode(
            self.tokens[self._prefix_offset : self._read_offset]
        )
        new_text = self._tokenizer.decode(self.tokens[self._prefix_offset :])
        if len(new_text) > len(prefix_text) and not new_text.endswith(_REPLACEMENT_CHAR):
            self._prefix_offset = self._read_offset
            self._read_offset = len(self.tokens)
            return new_text[len(prefix_text) :]
        return ""

    def flush(self) -> str:
        """Return whatever text is still held back."""
        prefix_text = self._tokenizer.decode(
            self.tokens[self._prefix_offset : self._read_offset]
        )
        new_text = self._tokenizer.decode(self.tokens[self._prefix_offset :])
        self._prefix_offset = self._read_offset = len(self.tokens)
        return new_text[len(prefix_text) :]

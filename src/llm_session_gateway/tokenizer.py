from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Protocol, runtime_checkable

import tiktoken
from loguru import logger

from llm_session_gateway.errors import UnsupportedModel

_FALLBACK_ENCODING = "cl100k_base"

# Maximum combined input + output tokens per model. Dated variants such as
# "gpt-4o-2024-08-06" resolve through the longest matching prefix.
MODEL_CONTEXT_TOKENS: dict[str, int] = {
    "gpt-3.5-turbo": 16_385,
    "gpt-3.5-turbo-16k": 16_385,
    "gpt-3.5-turbo-instruct": 4_096,
    "gpt-4": 8_192,
    "gpt-4-32k": 32_768,
    "gpt-4-turbo": 128_000,
    "gpt-4-1106-preview": 128_000,
    "gpt-4-0125-preview": 128_000,
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gpt-4.1": 1_047_576,
    "gpt-4.1-mini": 1_047_576,
    "gpt-4.1-nano": 1_047_576,
    "o1": 200_000,
    "o1-mini": 128_000,
    "o3": 200_000,
    "o3-mini": 200_000,
    "o4-mini": 200_000,
}


def max_context_tokens(model: str, overrides: dict[str, int] | None = None) -> int:
    table = dict(MODEL_CONTEXT_TOKENS)
    if overrides:
        table.update({k: int(v) for k, v in overrides.items()})

    if model in table:
        return table[model]

    candidates = [name for name in table if model.startswith(name + "-")]
    if not candidates:
        raise UnsupportedModel(model)
    return table[max(candidates, key=len)]


@runtime_checkable
class Tokenizer(Protocol):
    def encode(self, model: str, text: str) -> list[int]: ...

    def count(self, model: str, text: str) -> int: ...


class TiktokenTokenizer:
    def __init__(self, fallback_encoding: str = _FALLBACK_ENCODING):
        self._fallback_encoding = fallback_encoding
        self._encodings: dict[str, tiktoken.Encoding] = {}

    @contextmanager
    def encoding_scope(self, model: str) -> Iterator[tiktoken.Encoding]:
        # tiktoken encodings hold no resources to release; every use still
        # goes through this scope so there is a single release point.
        yield self._resolve(model)

    def encode(self, model: str, text: str) -> list[int]:
        with self.encoding_scope(model) as encoding:
            return encoding.encode(text, disallowed_special=())

    def count(self, model: str, text: str) -> int:
        return len(self.encode(model, text))

    def _resolve(self, model: str) -> tiktoken.Encoding:
        try:
            name = tiktoken.encoding_name_for_model(model)
        except KeyError:
            logger.debug(f"No tiktoken encoding registered for {model!r}, using {self._fallback_encoding}")
            name = self._fallback_encoding

        encoding = self._encodings.get(name)
        if encoding is None:
            encoding = tiktoken.get_encoding(name)
            self._encodings[name] = encoding
        return encoding

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Protocol, runtime_checkable

from loguru import logger

from llm_session_gateway.models import ChatMessage
from llm_session_gateway.tokenizer import Tokenizer

# Framing tokens added per message on top of its serialized content.
MESSAGE_OVERHEAD_TOKENS = 2
SAFETY_MARGIN_TOKENS = 100

MessageMeter = Callable[[ChatMessage], int]


@runtime_checkable
class ExtractMessages(Protocol):
    """History selection strategy.

    ``measure(message)`` is the tokenizer already bound to the request's model:
    it returns the serialized message's token count plus MESSAGE_OVERHEAD_TOKENS.
    Return the selected history (oldest first) and the sum of its costs.
    """

    def __call__(
        self,
        history: list[ChatMessage],
        new_message_tokens: int,
        budget: int,
        measure: MessageMeter,
    ) -> tuple[list[ChatMessage], int]: ...


def message_tokens(tokenizer: Tokenizer, model: str, message: ChatMessage) -> int:
    return tokenizer.count(model, message.serialize()) + MESSAGE_OVERHEAD_TOKENS


def evict_oldest(
    history: list[ChatMessage],
    new_message_tokens: int,
    budget: int,
    measure: MessageMeter,
) -> tuple[list[ChatMessage], int]:
    """Drop the oldest messages until the history plus the new message fits.

    If even an empty history does not fit, the empty history is returned and
    the new message is sent on its own.
    """
    costs = [measure(m) for m in history]
    total = sum(costs)
    start = 0
    while start < len(history) and total + new_message_tokens > budget:
        total -= costs[start]
        start += 1
    return history[start:], total


@dataclass
class ContextWindow:
    history: list[ChatMessage]
    new_message: ChatMessage
    history_tokens: int
    message_tokens: int
    budget: int
    dropped: int = 0

    @property
    def prompt_tokens(self) -> int:
        return self.history_tokens + self.message_tokens

    @property
    def fits(self) -> bool:
        return self.prompt_tokens <= self.budget

    def to_request(self) -> list[dict]:
        return [m.to_request() for m in self.history] + [self.new_message.to_request()]


class ContextWindowBuilder:
    def __init__(self, tokenizer: Tokenizer, *, safety_margin: int = SAFETY_MARGIN_TOKENS):
        self._tokenizer = tokenizer
        self._safety_margin = safety_margin

    def build(
        self,
        history: list[ChatMessage],
        new_message: ChatMessage,
        model: str,
        max_context: int,
        max_tokens: int,
        extract_messages: ExtractMessages | None = None,
    ) -> ContextWindow:
        def measure(message: ChatMessage) -> int:
            return message_tokens(self._tokenizer, model, message)

        budget = max_context - max_tokens - self._safety_margin
        new_tokens = measure(new_message)
        strategy = extract_messages or evict_oldest
        selected, history_tokens = strategy(list(history), new_tokens, budget, measure)

        window = ContextWindow(
            history=list(selected),
            new_message=new_message,
            history_tokens=history_tokens,
            message_tokens=new_tokens,
            budget=budget,
            dropped=len(history) - len(selected),
        )
        if window.dropped:
            logger.debug(
                f"Context window: dropped {window.dropped} of {len(history)} messages"
                f" to fit {window.prompt_tokens:,}/{budget:,} tokens for {model}"
            )
        if not window.fits:
            logger.warning(
                f"Context window: window needs {window.prompt_tokens:,} tokens,"
                f" budget is {budget:,} for {model}; sending anyway"
            )
        return window

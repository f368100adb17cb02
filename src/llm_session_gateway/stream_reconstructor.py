"""Rebuild an assistant reply from a chat-completion SSE stream.

The reconstructor passes every raw chunk through to its consumer unchanged
and, on the side, assembles ``choices[0].delta.content`` fragments into the
pending assistant message. The turn is finalized (token count, timestamps,
one save, one completion callback) on whichever fires first:

- the ``data: [DONE]`` sentinel ("finished")
- the source ending, failing cleanly, or the consumer calling ``aclose()``
  ("closed")
"""

from __future__ import annotations

import asyncio
import inspect
import json
from dataclasses import dataclass
from typing import AsyncIterable, Awaitable, Callable

from loguru import logger

from llm_session_gateway.context_window import message_tokens
from llm_session_gateway.errors import MalformedEvent
from llm_session_gateway.models import ChatMessage, ConversationRecord, utc_now
from llm_session_gateway.tokenizer import Tokenizer

DONE_SENTINEL = "[DONE]"

SaveRecord = Callable[[ConversationRecord], Awaitable[None]]
OnComplete = Callable[[ConversationRecord], Awaitable[None] | None]


@dataclass(frozen=True)
class StreamEvent:
    kind: str
    content: str = ""


IGNORED = StreamEvent("ignored")
DONE = StreamEvent("done")


def parse_event(line: str) -> StreamEvent:
    if not line.strip() or line.startswith(":"):
        return IGNORED

    name, _, value = line.partition(":")
    if name != "data":
        # event:, id: and retry: fields carry nothing we use.
        return IGNORED
    if value.startswith(" "):
        value = value[1:]
    if value.strip() == DONE_SENTINEL:
        return DONE

    try:
        payload = json.loads(value)
    except json.JSONDecodeError as ex:
        raise MalformedEvent(line, "invalid JSON") from ex
    if not isinstance(payload, dict):
        raise MalformedEvent(line, "payload is not an object")

    choices = payload.get("choices")
    if not choices:
        return IGNORED
    try:
        delta = choices[0].get("delta") or {}
        content = delta.get("content")
    except (AttributeError, TypeError, KeyError, IndexError) as ex:
        raise MalformedEvent(line, "unexpected choices shape") from ex
    if content is None:
        return IGNORED
    if not isinstance(content, str):
        raise MalformedEvent(line, "delta.content is not a string")
    return StreamEvent("content", content)


class SSELineBuffer:
    """Split an arbitrarily chunked byte stream into complete lines."""

    def __init__(self) -> None:
        self._pending = bytearray()

    def feed(self, chunk: bytes) -> list[str]:
        self._pending.extend(chunk)
        *lines, rest = bytes(self._pending).split(b"\n")
        self._pending = bytearray(rest)
        return [self._decode(line) for line in lines]

    def flush(self) -> str | None:
        if not self._pending:
            return None
        line = self._decode(bytes(self._pending))
        self._pending.clear()
        return line

    @staticmethod
    def _decode(line: bytes) -> str:
        return line.rstrip(b"\r").decode("utf-8", errors="replace")


class StreamReconstructor:
    def __init__(
        self,
        source: AsyncIterable[bytes | str],
        *,
        record: ConversationRecord,
        message: ChatMessage,
        model: str,
        tokenizer: Tokenizer,
        save: SaveRecord,
        base_tokens: int = 0,
        first_turn: bool = False,
        user_message: ChatMessage | None = None,
        on_complete: OnComplete | None = None,
        close_source: Callable[[], Awaitable[None]] | None = None,
    ):
        self._source = source
        self._record = record
        self._message = message
        self._model = model
        self._tokenizer = tokenizer
        self._save = save
        self._base_tokens = base_tokens
        self._first_turn = first_turn
        self._user_message = user_message
        self._on_complete = on_complete
        self._close_source = close_source

        self._buffer = SSELineBuffer()
        self._iterator = None
        self._received_content = False
        self._done = False
        self._finalized = False
        self._source_closed = False
        self._transport_closed = False
        self._outcome: asyncio.Future[ConversationRecord] | None = None

    @property
    def record(self) -> ConversationRecord:
        return self._record

    @property
    def message(self) -> ChatMessage:
        return self._message

    @property
    def content(self) -> str:
        return self._message.content

    @property
    def finalized(self) -> bool:
        return self._finalized

    def __aiter__(self):
        if self._iterator is None:
            self._iterator = self._iterate()
        return self._iterator

    async def aclose(self) -> None:
        """Stop consuming; still finalizes the turn if it has not been already.

        Safe to call from another task while a consumer is waiting inside
        ``async for``: the transport is closed under it, which ends its read,
        and the turn is finalized here.
        """
        if self._iterator is not None and self._iterator.ag_running:
            logger.debug(f"Closing stream for session {self._record.session_id} while it is being read")
            await self._close_transport()
            await self._finalize("closed")
            return
        if self._iterator is not None:
            await self._iterator.aclose()
        await self._shutdown("closed")

    async def wait_finalized(self) -> ConversationRecord:
        return await asyncio.shield(self._ensure_outcome())

    async def _iterate(self):
        failure: Exception | None = None
        try:
            async for chunk in self._source:
                self._consume(chunk)
                if self._done:
                    await self._finalize("finished")
                yield chunk
            tail = self._buffer.flush()
            if tail is not None:
                self._handle_line(tail)
        except Exception as ex:
            failure = ex
            raise
        finally:
            await self._shutdown("closed", failure)

    def _consume(self, chunk: bytes | str) -> None:
        data = chunk.encode("utf-8") if isinstance(chunk, str) else chunk
        for line in self._buffer.feed(data):
            self._handle_line(line)

    def _handle_line(self, line: str) -> None:
        if self._done or self._finalized:
            return
        try:
            event = parse_event(line)
        except MalformedEvent as ex:
            logger.warning(f"Skipping stream line: {ex}")
            return
        if event.kind == "done":
            self._done = True
        elif event.kind == "content" and event.content:
            self._message.content += event.content
            self._received_content = True

    async def _shutdown(self, trigger: str, failure: Exception | None = None) -> None:
        if not self._source_closed:
            self._source_closed = True
            source_aclose = getattr(self._source, "aclose", None)
            if source_aclose is not None:
                await source_aclose()
        await self._close_transport()

        if failure is not None and not self._received_content and not self._finalized:
            logger.warning(f"Stream failed before any content arrived, nothing persisted: {failure}")
            self._discard_pending_turn()
            self._finalized = True
            self._resolve(error=failure)
            return

        await self._finalize(trigger)

    async def _close_transport(self) -> None:
        if self._transport_closed:
            return
        self._transport_closed = True
        if self._close_source is not None:
            await self._close_source()

    async def _finalize(self, trigger: str) -> None:
        if self._finalized:
            logger.debug(f"Stream {trigger} after finalization, ignoring")
            return
        self._finalized = True

        now = utc_now()
        self._message.token = message_tokens(self._tokenizer, self._model, self._message)
        self._message.created = now
        self._record.total_tokens = self._base_tokens + self._message.token
        if not self._first_turn:
            self._record.last_update = now

        try:
            await self._save(self._record)
        except Exception as ex:
            self._resolve(error=ex)
            raise
        logger.debug(
            f"Stream {trigger}: session {self._record.session_id} saved,"
            f" reply {self._message.token} tokens, total {self._record.total_tokens}"
        )
        self._resolve(record=self._record)

        if self._on_complete is not None:
            result = self._on_complete(self._record)
            if inspect.isawaitable(result):
                await result

    def _discard_pending_turn(self) -> None:
        messages = self._record.messages
        for pending in (self._message, self._user_message):
            if pending is not None and messages and messages[-1] is pending:
                messages.pop()

    def _ensure_outcome(self) -> asyncio.Future[ConversationRecord]:
        if self._outcome is None:
            self._outcome = asyncio.get_running_loop().create_future()
        return self._outcome

    def _resolve(self, *, record: ConversationRecord | None = None, error: BaseException | None = None) -> None:
        outcome = self._ensure_outcome()
        if outcome.done():
            return
        if error is not None:
            outcome.set_exception(error)
            outcome.exception()
        else:
            outcome.set_result(record)

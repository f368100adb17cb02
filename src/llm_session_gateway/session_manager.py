from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from llm_session_gateway.completion_client import CompletionClient, CompletionRequest
from llm_session_gateway.context_window import (
    SAFETY_MARGIN_TOKENS,
    ContextWindow,
    ContextWindowBuilder,
    ExtractMessages,
    evict_oldest,
)
from llm_session_gateway.models import ChatMessage, ConversationRecord, utc_now
from llm_session_gateway.storage.base import KeyedStore
from llm_session_gateway.stream_reconstructor import OnComplete, StreamReconstructor
from llm_session_gateway.tokenizer import Tokenizer, max_context_tokens

DEFAULT_MODEL = "gpt-3.5-turbo"
DEFAULT_MAX_TOKENS = 50
DEFAULT_TEMPERATURE = 1.0


@dataclass
class SessionOptions:
    """Per-call or construction-time settings; ``None`` means "not set here"."""

    max_tokens: int | None = None
    temperature: float | None = None
    api_key: str | None = None
    extract_messages: ExtractMessages | None = None


@dataclass(frozen=True)
class _ResolvedOptions:
    max_tokens: int
    temperature: float
    api_key: str
    extract_messages: ExtractMessages


@dataclass
class _Turn:
    record: ConversationRecord
    first_turn: bool
    user_message: ChatMessage
    window: ContextWindow
    request: CompletionRequest
    options: _ResolvedOptions


class SessionManager:
    def __init__(
        self,
        store: KeyedStore,
        client: CompletionClient,
        tokenizer: Tokenizer,
        *,
        model: str = DEFAULT_MODEL,
        defaults: SessionOptions | None = None,
        safety_margin: int = SAFETY_MARGIN_TOKENS,
        context_overrides: dict[str, int] | None = None,
        max_history_messages: int | None = None,
    ):
        if max_history_messages is not None and max_history_messages < 2:
            raise ValueError("max_history_messages must keep at least one user/assistant pair (>= 2)")
        self._store = store
        self._client = client
        self._tokenizer = tokenizer
        self._model = model
        self._defaults = defaults or SessionOptions()
        self._window_builder = ContextWindowBuilder(tokenizer, safety_margin=safety_margin)
        self._context_overrides = dict(context_overrides or {})
        self._max_history_messages = max_history_messages

    async def get_session(self, session_id: str) -> ConversationRecord | None:
        return await self._store.get(session_id)

    async def delete_session(self, session_id: str) -> None:
        await self._store.delete(session_id)
        logger.info(f"Deleted session {session_id}")

    async def answer(
        self,
        session_id: str,
        prompt: str,
        model: str | None = None,
        options: SessionOptions | None = None,
    ) -> ConversationRecord:
        turn = await self._prepare_turn(session_id, prompt, model, options)
        completion = await self._client.complete(turn.request, api_key=turn.options.api_key)

        now = utc_now()
        user = turn.user_message
        user.token = completion.prompt_tokens
        user.created = now
        assistant = ChatMessage("assistant", completion.content, token=completion.completion_tokens, created=now)

        record = turn.record
        record.messages.extend([user, assistant])
        record.total_tokens = completion.total_tokens
        if not turn.first_turn:
            record.last_update = now

        await self._persist(record)
        return record

    async def answer_stream(
        self,
        session_id: str,
        prompt: str,
        model: str | None = None,
        options: SessionOptions | None = None,
        on_complete: OnComplete | None = None,
    ) -> StreamReconstructor:
        """Start a streamed turn and hand back the live event source.

        Iterate the returned reconstructor for raw SSE chunks; the updated
        record is persisted once the stream finishes or is closed.
        """
        turn = await self._prepare_turn(session_id, prompt, model, options)
        stream = await self._client.stream(turn.request, api_key=turn.options.api_key)

        user = turn.user_message
        user.token = turn.window.message_tokens
        user.created = utc_now()
        assistant = ChatMessage("assistant", "")
        turn.record.messages.extend([user, assistant])

        return StreamReconstructor(
            stream.aiter_bytes(),
            record=turn.record,
            message=assistant,
            model=turn.request.model,
            tokenizer=self._tokenizer,
            save=self._persist,
            base_tokens=turn.window.prompt_tokens,
            first_turn=turn.first_turn,
            user_message=user,
            on_complete=on_complete,
            close_source=stream.aclose,
        )

    async def _prepare_turn(
        self,
        session_id: str,
        prompt: str,
        model: str | None,
        options: SessionOptions | None,
    ) -> _Turn:
        model = model or self._model
        resolved = self._resolve_options(options)
        # Raises UnsupportedModel before any store or API call.
        max_context = max_context_tokens(model, self._context_overrides)

        record = await self._store.get(session_id)
        first_turn = record is None
        if record is None:
            record = ConversationRecord(session_id=session_id)

        user = ChatMessage("user", prompt)
        window = self._window_builder.build(
            record.messages,
            user,
            model,
            max_context,
            resolved.max_tokens,
            resolved.extract_messages,
        )
        request = CompletionRequest(
            model=model,
            messages=window.to_request(),
            max_tokens=resolved.max_tokens,
            temperature=resolved.temperature,
        )
        logger.debug(
            f"Session {session_id}: {len(record.messages)} stored messages,"
            f" sending {len(window.history) + 1} (~{window.prompt_tokens:,} tokens)"
        )
        return _Turn(record, first_turn, user, window, request, resolved)

    def _resolve_options(self, options: SessionOptions | None) -> _ResolvedOptions:
        layers = [options or SessionOptions(), self._defaults]

        def pick(name: str, fallback):
            for layer in layers:
                value = getattr(layer, name)
                if value is not None:
                    return value
            return fallback

        return _ResolvedOptions(
            max_tokens=int(pick("max_tokens", DEFAULT_MAX_TOKENS)),
            temperature=float(pick("temperature", DEFAULT_TEMPERATURE)),
            api_key=str(pick("api_key", "")),
            extract_messages=pick("extract_messages", evict_oldest),
        )

    async def _persist(self, record: ConversationRecord) -> None:
        if self._max_history_messages is not None:
            overflow = len(record.messages) - self._max_history_messages
            if overflow > 0:
                # Whole user/assistant pairs only.
                overflow += overflow % 2
                del record.messages[:overflow]
                logger.debug(f"Session {record.session_id}: pruned {overflow} oldest stored messages")
        await self._store.put(record.session_id, record)

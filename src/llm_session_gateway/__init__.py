from loguru import logger

from llm_session_gateway.completion_client import Completion, CompletionClient, CompletionRequest
from llm_session_gateway.context_window import ContextWindow, ContextWindowBuilder, ExtractMessages, evict_oldest
from llm_session_gateway.errors import (
    CompletionTimeout,
    GatewayError,
    MalformedEvent,
    ProvisioningFailed,
    ProvisioningTimeout,
    RemoteAPIError,
    UnsupportedModel,
)
from llm_session_gateway.models import ChatMessage, ConversationRecord
from llm_session_gateway.session_manager import SessionManager, SessionOptions
from llm_session_gateway.stream_reconstructor import StreamReconstructor
from llm_session_gateway.tokenizer import TiktokenTokenizer, Tokenizer, max_context_tokens

# Silent unless the host opts in (setup_logging does).
logger.disable("llm_session_gateway")

__all__ = [
    "ChatMessage",
    "Completion",
    "CompletionClient",
    "CompletionRequest",
    "CompletionTimeout",
    "ContextWindow",
    "ContextWindowBuilder",
    "ConversationRecord",
    "ExtractMessages",
    "GatewayError",
    "MalformedEvent",
    "ProvisioningFailed",
    "ProvisioningTimeout",
    "RemoteAPIError",
    "SessionManager",
    "SessionOptions",
    "StreamReconstructor",
    "TiktokenTokenizer",
    "Tokenizer",
    "UnsupportedModel",
    "evict_oldest",
    "max_context_tokens",
]

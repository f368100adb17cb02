from llm_session_gateway.storage.base import GateState, KeyedStore, ProvisionedStore, ReadinessGate
from llm_session_gateway.storage.memory import InMemoryStore
from llm_session_gateway.storage.sqlite import SQLiteStore

__all__ = [
    "GateState",
    "InMemoryStore",
    "KeyedStore",
    "ProvisionedStore",
    "ReadinessGate",
    "SQLiteStore",
]

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from llm_session_gateway.completion_client import (
    DEFAULT_BASE_URL,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_STREAM_TIMEOUT_SECONDS,
)
from llm_session_gateway.context_window import SAFETY_MARGIN_TOKENS
from llm_session_gateway.session_manager import DEFAULT_MAX_TOKENS, DEFAULT_MODEL, DEFAULT_TEMPERATURE
from llm_session_gateway.storage.base import DEFAULT_POLL_INTERVAL_SECONDS, DEFAULT_PROVISION_TIMEOUT_SECONDS

STORE_KINDS = ("memory", "sqlite", "mongodb")


@dataclass
class RuntimeEnv:
    api_key: str
    api_key_env_var: str
    mongodb_url: str | None


@dataclass
class AppConfig:
    model: str
    max_tokens: int
    temperature: float
    api_base_url: str
    request_timeout_seconds: float
    stream_timeout_seconds: float
    safety_margin_tokens: int
    model_context_tokens: dict[str, int]
    max_history_messages: int | None
    store: str
    store_table: str
    sqlite_db_path: str
    mongo_database: str
    provision_timeout_seconds: float
    provision_poll_interval_seconds: float
    session_id: str | None
    log_level: str
    log_consumers: list | None


def load_json_config(path: Path | None = None) -> dict:
    config_path = path or Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _optional_int(value: object) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def parse_app_config(config: dict) -> AppConfig:
    store = str(config.get("Store", "memory")).strip().lower()
    if store not in STORE_KINDS:
        raise ValueError(f"Unknown store: {store!r}. Supported: {', '.join(STORE_KINDS)}")

    max_history_messages = _optional_int(config.get("MaxHistoryMessages"))
    if max_history_messages is not None and max_history_messages < 2:
        raise ValueError("MaxHistoryMessages must keep at least one user/assistant pair (>= 2)")

    return AppConfig(
        model=config.get("Model", DEFAULT_MODEL),
        max_tokens=int(config.get("MaxTokens", DEFAULT_MAX_TOKENS)),
        temperature=float(config.get("Temperature", DEFAULT_TEMPERATURE)),
        api_base_url=str(config.get("ApiBaseUrl", DEFAULT_BASE_URL)),
        request_timeout_seconds=float(config.get("RequestTimeoutSeconds", DEFAULT_REQUEST_TIMEOUT_SECONDS)),
        stream_timeout_seconds=float(config.get("StreamTimeoutSeconds", DEFAULT_STREAM_TIMEOUT_SECONDS)),
        safety_margin_tokens=int(config.get("SafetyMarginTokens", SAFETY_MARGIN_TOKENS)),
        model_context_tokens={k: int(v) for k, v in (config.get("ModelContextTokens") or {}).items()},
        max_history_messages=max_history_messages,
        store=store,
        store_table=str(config.get("StoreTable", "chat")),
        sqlite_db_path=str(config.get("SqliteDbPath", ".gateway/sessions.db")),
        mongo_database=str(config.get("MongoDatabase", "gateway")),
        provision_timeout_seconds=float(config.get("ProvisionTimeoutSeconds", DEFAULT_PROVISION_TIMEOUT_SECONDS)),
        provision_poll_interval_seconds=float(
            config.get("ProvisionPollIntervalSeconds", DEFAULT_POLL_INTERVAL_SECONDS)
        ),
        session_id=str(config.get("SessionId", "")).strip() or None,
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env() -> RuntimeEnv:
    return RuntimeEnv(
        api_key=os.environ.get("OPENAI_API_KEY", ""),
        api_key_env_var="OPENAI_API_KEY",
        mongodb_url=os.environ.get("MONGODB_URL"),
    )

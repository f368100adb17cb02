from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from llm_session_gateway.app_config import AppConfig, RuntimeEnv
from llm_session_gateway.completion_client import CompletionClient
from llm_session_gateway.logging_config import setup_logging
from llm_session_gateway.session_manager import SessionManager, SessionOptions
from llm_session_gateway.storage import InMemoryStore, KeyedStore, SQLiteStore
from llm_session_gateway.tokenizer import TiktokenTokenizer


@dataclass
class GatewayRuntime:
    manager: SessionManager
    store: KeyedStore
    client: CompletionClient
    log_descriptions: list[str]

    async def aclose(self) -> None:
        await self.client.aclose()
        await self.store.close()


def create_store(app: AppConfig, env: RuntimeEnv) -> KeyedStore:
    """Factory: build the configured store. Must run inside the event loop."""
    if app.store == "sqlite":
        db_path = Path(app.sqlite_db_path)
        if not db_path.is_absolute():
            db_path = Path.cwd() / db_path
        return SQLiteStore(
            str(db_path),
            app.store_table,
            provision_timeout=app.provision_timeout_seconds,
            poll_interval=app.provision_poll_interval_seconds,
        )
    if app.store == "mongodb":
        if not env.mongodb_url:
            raise ValueError("MONGODB_URL environment variable is required for the mongodb store.")
        from llm_session_gateway.storage.mongo import MongoStore
        return MongoStore.from_url(
            env.mongodb_url,
            app.mongo_database,
            app.store_table,
            provision_timeout=app.provision_timeout_seconds,
            poll_interval=app.provision_poll_interval_seconds,
        )
    return InMemoryStore()


async def bootstrap_gateway(app: AppConfig, env: RuntimeEnv) -> GatewayRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    if not env.api_key:
        logger.warning(f"{env.api_key_env_var} is not set; requests will be sent without credentials")

    store = create_store(app, env)
    client = CompletionClient(
        base_url=app.api_base_url,
        request_timeout=app.request_timeout_seconds,
        stream_timeout=app.stream_timeout_seconds,
    )
    manager = SessionManager(
        store,
        client,
        TiktokenTokenizer(),
        model=app.model,
        defaults=SessionOptions(
            max_tokens=app.max_tokens,
            temperature=app.temperature,
            api_key=env.api_key,
        ),
        safety_margin=app.safety_margin_tokens,
        context_overrides=app.model_context_tokens,
        max_history_messages=app.max_history_messages,
    )
    logger.info(f"Gateway ready: model={app.model}, store={app.store}")

    return GatewayRuntime(
        manager=manager,
        store=store,
        client=client,
        log_descriptions=log_descriptions,
    )

import asyncio
import json
import os
import shutil
import unittest
from pathlib import Path
from unittest.mock import patch
from uuid import uuid4

from llm_session_gateway.app_config import load_json_config, parse_app_config, resolve_runtime_env
from llm_session_gateway.bootstrap import bootstrap_gateway, create_store
from llm_session_gateway.storage import InMemoryStore, SQLiteStore

PROJECT_ROOT = Path(__file__).resolve().parents[1]


class AppConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"app-config-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)

    def tearDown(self) -> None:
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def test_defaults(self) -> None:
        app = parse_app_config({})
        self.assertEqual("gpt-3.5-turbo", app.model)
        self.assertEqual(50, app.max_tokens)
        self.assertEqual(1.0, app.temperature)
        self.assertEqual("memory", app.store)
        self.assertEqual("chat", app.store_table)
        self.assertEqual(6.0, app.provision_timeout_seconds)
        self.assertEqual(1.0, app.provision_poll_interval_seconds)
        self.assertEqual(100, app.safety_margin_tokens)
        self.assertIsNone(app.max_history_messages)
        self.assertIsNone(app.session_id)

    def test_keys_are_read(self) -> None:
        app = parse_app_config(
            {
                "Model": "gpt-4o",
                "MaxTokens": 400,
                "Temperature": 0.3,
                "Store": "SQLite",
                "StoreTable": "sessions",
                "ModelContextTokens": {"local-llama": "8192"},
                "MaxHistoryMessages": 20,
                "SessionId": "  demo ",
            }
        )
        self.assertEqual(("gpt-4o", 400, 0.3), (app.model, app.max_tokens, app.temperature))
        self.assertEqual("sqlite", app.store)
        self.assertEqual({"local-llama": 8192}, app.model_context_tokens)
        self.assertEqual(20, app.max_history_messages)
        self.assertEqual("demo", app.session_id)

    def test_invalid_values_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            parse_app_config({"Store": "dynamodb"})
        with self.assertRaises(ValueError):
            parse_app_config({"MaxHistoryMessages": 1})

    def test_load_json_config(self) -> None:
        path = self._tmp_dir / "config.json"
        self.assertEqual({}, load_json_config(path))
        path.write_text(json.dumps({"Model": "gpt-4"}))
        self.assertEqual({"Model": "gpt-4"}, load_json_config(path))

    def test_runtime_env(self) -> None:
        with patch.dict(os.environ, {"OPENAI_API_KEY": "sk-env", "MONGODB_URL": "mongodb://m"}, clear=False):
            env = resolve_runtime_env()
        self.assertEqual("sk-env", env.api_key)
        self.assertEqual("mongodb://m", env.mongodb_url)

    def test_create_store_by_kind(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            env = resolve_runtime_env()

        self.assertIsInstance(create_store(parse_app_config({}), env), InMemoryStore)

        sqlite_store = create_store(
            parse_app_config({"Store": "sqlite", "SqliteDbPath": str(self._tmp_dir / "s.db")}), env
        )
        self.assertIsInstance(sqlite_store, SQLiteStore)
        asyncio.run(sqlite_store.close())

        with self.assertRaises(ValueError):
            create_store(parse_app_config({"Store": "mongodb"}), env)

    def test_bootstrap_wires_a_working_manager(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            env = resolve_runtime_env()
        app = parse_app_config({"LogConsumers": []})

        async def scenario():
            runtime = await bootstrap_gateway(app, env)
            try:
                return runtime, await runtime.manager.get_session("nope")
            finally:
                await runtime.aclose()

        runtime, session = asyncio.run(scenario())
        self.assertIsNone(session)
        self.assertIsInstance(runtime.store, InMemoryStore)
        self.assertEqual([], runtime.log_descriptions)


if __name__ == "__main__":
    unittest.main()

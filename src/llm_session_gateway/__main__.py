import asyncio
from contextlib import aclosing
from uuid import uuid4

from dotenv import load_dotenv
from loguru import logger

from llm_session_gateway.app_config import load_json_config, parse_app_config, resolve_runtime_env
from llm_session_gateway.bootstrap import bootstrap_gateway
from llm_session_gateway.errors import GatewayError
from llm_session_gateway.session_manager import SessionManager


async def _stream_turn(manager: SessionManager, session_id: str, prompt: str) -> None:
    stream = await manager.answer_stream(session_id, prompt)
    printed = 0
    async with aclosing(stream):
        async for _ in stream:
            text = stream.content
            if len(text) > printed:
                print(text[printed:], end="", flush=True)
                printed = len(text)
    record = await stream.wait_finalized()
    logger.debug(f"Session {session_id}: {len(record.messages)} messages, {record.total_tokens} tokens")


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    env = resolve_runtime_env()
    runtime = await bootstrap_gateway(app, env)
    session_id = app.session_id or uuid4().hex

    print("llm-session-gateway (type 'exit' to quit, '/reset' to clear the session)")
    print(f"Model: {app.model}")
    print(f"Store: {app.store}")
    print(f"Session: {session_id}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    try:
        while True:
            try:
                user_input = input("you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()

            if trimmed in ("exit", "quit"):
                break

            if not trimmed:
                continue

            if trimmed == "/reset":
                await runtime.manager.delete_session(session_id)
                print("Session cleared.\n")
                continue

            try:
                print("assistant> ", end="", flush=True)
                await _stream_turn(runtime.manager, session_id, trimmed)
                print("\n")
            except GatewayError as ex:
                print()
                logger.error(f"Turn failed: {ex}")
    finally:
        await runtime.aclose()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()

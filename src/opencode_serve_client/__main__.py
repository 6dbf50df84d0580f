import asyncio
import sys

from dotenv import load_dotenv
from loguru import logger

from opencode_serve_client.app_config import load_json_config, parse_client_config
from opencode_serve_client.client import OpenCodeClient
from opencode_serve_client.errors import OpenCodeError
from opencode_serve_client.events import EventType
from opencode_serve_client.logging_config import setup_logging
from opencode_serve_client.models import CreateSessionRequest


async def _run_turn(client: OpenCodeClient, session_id: str, prompt: str) -> None:
    async for event in client.stream_response(session_id, prompt):
        if event.type is EventType.CHUNK and event.delta:
            print(event.delta, end="", flush=True)
        elif event.type is EventType.ERROR:
            print()
            logger.error(f"Turn failed: {event.error_message or 'unknown error'}")


async def main() -> None:
    load_dotenv()

    raw_config = load_json_config()

    log_descriptions = setup_logging(
        level=raw_config.get("LogLevel", "INFO"),
        consumers=raw_config.get("LogConsumers"),
    )

    try:
        config = parse_client_config(raw_config).validated()
    except ValueError as ex:
        logger.error(str(ex))
        sys.exit(1)

    async with OpenCodeClient(config) as client:
        health = await client.check_health()
        if not health:
            logger.error(f"OpenCode server is not reachable: {health.error}")
            sys.exit(1)

        async with client.scoped_session(CreateSessionRequest(title="opencode-serve-client")) as session:
            print("opencode-serve-client (type 'exit' to quit)")
            print(f"Server: {client.base_url}")
            print(f"Session: {session.id}")
            if config.directory:
                print(f"Directory: {config.directory}")
            if log_descriptions:
                print(f"Logging: {', '.join(log_descriptions)}")
            print()

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

                try:
                    print()
                    await _run_turn(client, session.id, trimmed)
                    print("\n")
                except OpenCodeError as ex:
                    logger.error(f"Request failed: {ex}")


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()

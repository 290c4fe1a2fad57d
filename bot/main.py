from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

import uvicorn

from core.api import create_api_app
from core.bot import BridgeBot
from core.config import AppConfig, load_config
from core.logging import configure_logging

LOGGER = logging.getLogger(__name__)


def _status_server(bot: BridgeBot, config: AppConfig) -> uvicorn.Server:
    return uvicorn.Server(
        uvicorn.Config(
            app=create_api_app(bot),
            host=config.fastapi.host,
            port=config.fastapi.port,
            log_level=config.logging.level.lower(),
            log_config=None,
        )
    )


async def _run(config: AppConfig) -> None:
    bot = BridgeBot(config=config)
    async with bot:
        server: uvicorn.Server | None = None
        server_task: asyncio.Task[None] | None = None
        if config.fastapi.enabled:
            server = _status_server(bot, config)
            server_task = asyncio.create_task(server.serve(), name="status-api")
            LOGGER.info("Status API listening on %s:%s", config.fastapi.host, config.fastapi.port)
        try:
            await bot.start(config.discord.token)
        finally:
            if server is not None and server_task is not None:
                server.should_exit = True
                await asyncio.gather(server_task, return_exceptions=True)


def main() -> None:
    default_path = Path(__file__).resolve().parent / "config" / "config.yaml"
    config = load_config(Path(os.getenv("BRIDGE_CONFIG", default_path)))
    configure_logging(config.logging)
    try:
        asyncio.run(_run(config))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted; bridge stopped")


if __name__ == "__main__":
    main()

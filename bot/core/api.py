from __future__ import annotations

from fastapi import FastAPI, Header, HTTPException

from core.bot import BridgeBot


def _auth(x_api_key: str | None, expected: str) -> None:
    if not expected:
        return
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


def create_api_app(bot: BridgeBot) -> FastAPI:
    app = FastAPI(title="WhatsApp Bridge Status API", version="1.0.0")

    @app.get("/health")
    async def health() -> dict[str, object]:
        return {"status": "ok", "discord_ready": bot.is_ready()}

    @app.get("/instances")
    async def instances(x_api_key: str | None = Header(default=None)) -> dict[str, object]:
        _auth(x_api_key, bot.config.fastapi.api_key)
        return {"items": bot.instance_manager.status_report()}

    @app.get("/instances/{guild_id}")
    async def instance(guild_id: str, x_api_key: str | None = Header(default=None)) -> dict[str, object]:
        _auth(x_api_key, bot.config.fastapi.api_key)
        rows = bot.instance_manager.status_report(guild_id)
        if not rows:
            raise HTTPException(status_code=404, detail="Instance not found")
        return rows[0]

    return app

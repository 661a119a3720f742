"""FastAPI app entrypoint."""

from __future__ import annotations

import uvicorn
from fastapi import FastAPI

from pushdeploy.api.deps import get_settings
from pushdeploy.api.routes.deploy import router as deploy_router
from pushdeploy.api.routes.webhook import router as webhook_router
from pushdeploy.config import DeployConfig


def create_app() -> FastAPI:
    app = FastAPI(title="pushdeploy", version="0.1.0")
    app.include_router(webhook_router)
    app.include_router(deploy_router)

    @app.get("/api/v1/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()


def run(config: DeployConfig | None = None) -> None:
    settings = get_settings()
    port = settings.port or (config.webhook_port if config is not None else 9000)
    uvicorn.run("pushdeploy.api.app:app", host=settings.host, port=port, reload=False)

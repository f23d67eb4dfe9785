from __future__ import annotations

import logging

import uvicorn
from fastapi import FastAPI

from .api_server import create_app
from .config import load_settings
from .runtime import AnalysisRuntime


logger = logging.getLogger(__name__)

settings = load_settings()
logging.basicConfig(
    level=getattr(logging, settings.app.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
runtime = AnalysisRuntime(settings)
app: FastAPI = create_app(runtime)


@app.on_event("startup")
async def _startup() -> None:
    await runtime.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    await runtime.stop()


def run() -> None:
    uvicorn.run(app, host=settings.api.host, port=settings.api.port)


if __name__ == "__main__":
    run()

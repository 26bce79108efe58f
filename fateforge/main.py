from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from fateforge.config import settings
from fateforge.db.bootstrap import init_db
from fateforge.logging_setup import setup_logging
from fateforge.modules.game.router import router as game_router


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    setup_logging(settings.log_level)
    init_db()
    yield


def create_app() -> FastAPI:
    application = FastAPI(title=settings.app_name, lifespan=_lifespan)

    @application.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    application.include_router(game_router)
    return application


app = create_app()


def run() -> None:
    uvicorn.run("fateforge.main:app", host="127.0.0.1", port=8000, log_config=None)

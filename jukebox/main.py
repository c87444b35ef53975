from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from jukebox.api.routes.health import router as health_router
from jukebox.api.routes.internal_points import router as internal_points_router
from jukebox.core.config import get_settings
from jukebox.core.logging import configure_logging
from jukebox.db.session import dispose_engine


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    await dispose_engine()


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.app_env != "dev")

    app = FastAPI(
        title="Jukebox Queue API",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.include_router(health_router)
    app.include_router(internal_points_router)
    return app


app = create_app()


def run() -> None:
    settings = get_settings()
    uvicorn.run(
        "jukebox.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.app_env == "dev",
    )


if __name__ == "__main__":
    run()

import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from scanflow.api.routes import analyze, feedback
from scanflow.core import settings
from scanflow.logger import get_logger, setup_logging
from scanflow.manager import create_service

logger = get_logger(__name__)


def create_app() -> FastAPI:
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Initializing services...")
        settings.log_environment()

        if not os.getenv("STORE_URL"):
            logger.info("STORE_URL not set. Records are kept in a local JSON file.")

        service = create_service()

        app.state.service = service
        app.state.pipeline = service.pipeline
        app.state.feedback = service.feedback
        app.state.fewshots = service.fewshots

        logger.info("Services initialized.")
        yield
        logger.info("Service shutting down.")
        await service.aclose()

    app = FastAPI(title="Scanflow", lifespan=lifespan)

    app.include_router(analyze.router)
    app.include_router(feedback.router)

    return app


app = create_app()

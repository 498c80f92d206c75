"""Society billing FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

from society_billing.api import billing
from society_billing.config import get_settings
from society_billing.services import dispose_engine, init_db
from society_billing.services.logging import setup_server_logging

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle (startup and shutdown)."""
    await init_db()
    logger.info("Database tables initialized")
    yield
    await dispose_engine()
    logger.info("Application shutting down")


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title=settings.api_title,
        description="Maintenance billing and member ledger for housing societies",
        version=settings.api_version,
        lifespan=lifespan,
    )
    app.include_router(billing.router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "ok"}

    return app


app = create_app()


def main(host: str = "0.0.0.0", port: int = 8000) -> None:
    """Run the API server with file logging."""
    setup_server_logging()
    logger.info("Starting billing API on %s:%d", host, port)
    uvicorn.run(app, host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()

"""Main application entry point."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import uvicorn
from fastapi import FastAPI

from .api.router import lifecycle_error_handler, router
from .bootstrap import build_stores, initialize
from .config import AppConfig, get_config_path, load_config
from .lifecycle.engine import LifecycleEngine
from .lifecycle.errors import LifecycleError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def load_app_config() -> AppConfig:
    """Load the configuration file, falling back to defaults when it is missing."""
    config_path = get_config_path()
    if not config_path.exists():
        logger.warning(f"Configuration file not found: {config_path}")
        logger.warning("Using default configuration (see config/config.example.yaml)")
        return AppConfig()

    config = load_config(config_path)
    logger.info(f"Loaded configuration from {config_path}")
    return config


def create_app(
    config: Optional[AppConfig] = None,
    engine: Optional[LifecycleEngine] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Configuration to use at startup (loaded from disk if omitted)
        engine: Pre-built lifecycle engine; skips store initialisation
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info("Starting Parking Booking service...")

        if app.state.engine is None:
            app_config = config or load_app_config()
            stores = build_stores(app_config)
            app.state.engine = initialize(app_config, stores)

        logger.info("Parking Booking service ready")

        yield  # Application runs here

        logger.info("Shutdown complete")

    app = FastAPI(
        title="Parking Booking",
        description="API for reserving parking slots with admin-approved arrival and departure",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.started_at = datetime.now()

    app.add_exception_handler(LifecycleError, lifecycle_error_handler)
    app.include_router(router, prefix="/api/v1")
    return app


app = create_app()


def main():
    """Run the application."""
    # Load config just to get API settings
    config_path = get_config_path()
    if config_path.exists():
        cfg = load_config(config_path)
        host = cfg.api.host
        port = cfg.api.port
    else:
        host = "0.0.0.0"
        port = 8000

    uvicorn.run(
        "parking_booking.main:app",
        host=host,
        port=port,
        reload=False,
    )


if __name__ == "__main__":
    main()

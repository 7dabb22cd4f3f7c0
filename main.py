"""
Main application entry point
Builds the reachability service and starts the web server
"""

import argparse
import asyncio
from contextlib import asynccontextmanager, suppress
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from reflector import __version__
from reflector.api.routes import router as api_router
from reflector.core.config import ReflectorConfig
from reflector.core.logging import configure_logging
from reflector.scanner.engine import CheckEngine

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    config: ReflectorConfig = app.state.config

    # Startup
    configure_logging(config.log_level, str(config.log_dir))
    logger.info("Starting reflector", version=__version__)
    config.log_summary()

    reset_task = asyncio.create_task(
        app.state.engine.rate_limiter.run_reset_cycle(config.rate_limit_reset_interval)
    )

    yield

    # Shutdown
    logger.info("Shutting down reflector")
    reset_task.cancel()
    with suppress(asyncio.CancelledError):
        await reset_task
    logger.info("Reflector shutdown complete")


def create_app(config: Optional[ReflectorConfig] = None) -> FastAPI:
    """Create the FastAPI application with its check engine"""
    config = config or ReflectorConfig()

    app = FastAPI(
        title="Reflector",
        description="Checks whether the caller's own ports are reachable from the internet",
        version=__version__,
        lifespan=lifespan
    )
    app.state.config = config
    app.state.engine = CheckEngine(config)

    # Allow cross-origin calls from browser front-ends
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    app.include_router(api_router)
    return app


app = create_app()


def parse_arguments(config: ReflectorConfig):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Reflector reachability service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                          Start the web server
  python main.py --port 9000              Listen on another port
  REFLECTOR_ALLOWED_PORTS=22,443 python main.py
        """
    )

    parser.add_argument(
        "--host",
        default=config.host,
        help=f"Host to bind the web server (default: {config.host})"
    )

    parser.add_argument(
        "--port",
        type=int,
        default=config.port,
        help=f"Port to bind the web server (default: {config.port})"
    )

    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable hot reload (development only)"
    )

    return parser.parse_args()


if __name__ == "__main__":
    args = parse_arguments(app.state.config)

    uvicorn.run(
        "main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_config=None  # Use our custom logging configuration
    )

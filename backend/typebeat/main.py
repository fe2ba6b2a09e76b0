"""
Typebeat renderer HTTP service.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import RenderConfig
from .routes import render
from .service import RenderService

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = ["http://localhost:5173"]  # Vite dev server


def create_app(service: Optional[RenderService] = None, config: Optional[RenderConfig] = None) -> FastAPI:
    """
    Build the FastAPI app around one RenderService.

    The service (and with it the engine) is shut down with the app.
    """
    if service is None:
        service = RenderService(config or RenderConfig.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.render_service.shutdown()

    app = FastAPI(title="Typebeat Renderer", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=DEFAULT_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.render_service = service
    app.include_router(render.router)

    @app.get("/")
    async def root():
        return {"service": "typebeat-renderer", "status": "running", "busy": service.is_busy}

    return app


def run(host: str = "127.0.0.1", port: int = 8085, log_level: str = "info") -> None:
    """Serve the app with uvicorn."""
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info(f"Starting Typebeat renderer on {host}:{port}")
    uvicorn.run(create_app(), host=host, port=port, log_level=log_level)

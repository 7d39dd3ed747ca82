"""
FastAPI Server for PromptLens

Serves the enhancement suggestion pipeline over HTTP.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-05
"""

import argparse
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from promptlens_core import __version__
from promptlens_core.config import PromptLensConfig, configure_logging, get_config, load_config
from promptlens_core.pipeline import PipelineContext
from promptlens_web.routers import set_pipeline_context, suggestions_router, system_router

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[PromptLensConfig] = None,
    context: Optional[PipelineContext] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: configuration (the process-wide get_config() if None)
        context: pre-built PipelineContext (built from config if None)
    """
    config = config or (context.config if context is not None else get_config())
    context = context or PipelineContext.from_config(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        set_pipeline_context(context)
        context.cache.start_sweeper(config.cache.sweep_interval)
        logger.info(
            f"PromptLens {__version__} ready (backend={config.llm.backend}, model={config.llm.model}, "
            f"shared_cache={'on' if context.cache.shared is not None else 'off'})"
        )
        try:
            yield
        finally:
            set_pipeline_context(None)
            await context.close()

    app = FastAPI(
        title="PromptLens",
        description="Diverse, on-topic alternatives for highlighted prompt spans",
        version=__version__,
        lifespan=lifespan,
    )

    if config.web.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.web.cors_origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(suggestions_router)
    app.include_router(system_router)
    return app


def main():
    """Main entry point for promptlens-server CLI."""
    parser = argparse.ArgumentParser(
        prog="promptlens-server",
        description="PromptLens - enhancement suggestion server",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to promptlens.yaml")
    parser.add_argument("--host", default=None, help="Host to bind to (default: from config)")
    parser.add_argument("--port", type=int, default=None, help="Port to bind to (default: from config)")
    parser.add_argument("--model", default=None, help="LLM model (default: from config)")
    args = parser.parse_args()

    config = load_config(args.config)
    if args.model:
        config.llm.model = args.model
    configure_logging(config.logging)

    host = args.host or config.web.host
    port = args.port or config.web.port
    print("=" * 60)
    print("PromptLens")
    print("=" * 60)
    print(f"Server: http://{host}:{port}")
    print(f"Backend: {config.llm.backend} ({config.llm.model})")
    print(f"Shared cache: {config.cache.redis_url or 'disabled'}")
    print("=" * 60)

    uvicorn.run(create_app(config), host=host, port=port, log_level=config.logging.level.lower())


if __name__ == "__main__":
    main()

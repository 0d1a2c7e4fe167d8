"""FastAPI application main entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

from .middleware import register_error_handlers
from .routes import chat, system
from ..services.agent_provider import load_agent_provider
from ..services.config import AppConfig, get_config
from ..services.session_controller import SessionRegistry
from ..services.transcript import TranscriptService
from ..services.vault import VaultService

logger = logging.getLogger(__name__)


def init_app_state(app: FastAPI, config: AppConfig) -> SessionRegistry:
    """Put the provider, vault service and session registry on ``app.state``."""
    provider = load_agent_provider(config)
    vaults = VaultService(config)
    transcripts = TranscriptService(config) if config.transcripts_enabled else None
    app.state.config = config
    app.state.provider = provider
    app.state.vaults = vaults
    app.state.registry = SessionRegistry(provider, vaults, transcripts)
    logger.info(
        f"Startup complete: provider={provider.name}, vaults_dir={config.vaults_dir}, "
        f"transcripts={'on' if transcripts else 'off'}"
    )
    return app.state.registry


def create_app(config: AppConfig | None = None) -> FastAPI:
    """Build the application; ``config`` defaults to the environment."""
    config = config or get_config()
    system.configure_logging(config.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Wire the provider and session registry; close every session on shutdown."""
        registry = init_app_state(app, config)
        try:
            yield
        finally:
            logger.info("Shutting down: closing chat sessions")
            await registry.close_all()

    app = FastAPI(
        title="Vault Chat API",
        description="Vault-scoped AI agent sessions streamed over Server-Sent Events",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(system.router, tags=["system"])
    app.include_router(chat.router)
    return app


app = create_app()


__all__ = ["app", "create_app", "init_app_state"]

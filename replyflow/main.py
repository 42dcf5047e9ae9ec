"""
Reply Flow API server.

Run with:
    uvicorn replyflow.main:app --host 127.0.0.1 --port 3001
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from replyflow.api.v1 import channels, sessions, webhook
from replyflow.channels.base import GatewayClient
from replyflow.channels.whapi import WhapiGateway
from replyflow.config import Settings, settings
from replyflow.db.database import init_db
from replyflow.services.completion import AnthropicCompletionProvider, CompletionProvider
from replyflow.services.composer import ReplyComposer
from replyflow.services.provisioning import ProvisioningOrchestrator
from replyflow.services.reconciler import StatusReconciler
from replyflow.services.reply_gate import ReplyGate
from replyflow.services.webhook_router import WebhookRouter

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def configure_services(
    app: FastAPI,
    gateway: GatewayClient,
    completion: Optional[CompletionProvider],
    config: Settings = settings,
    session_factory=None,
) -> None:
    """Wire the services onto ``app.state``."""
    reconciler = StatusReconciler(gateway, config.webhook_url, session_factory=session_factory)
    gate = ReplyGate(completion, session_factory=session_factory)
    composer = ReplyComposer(gateway, completion, history_limit=config.history_limit)

    app.state.gateway = gateway
    app.state.reconciler = reconciler
    app.state.reply_gate = gate
    app.state.orchestrator = ProvisioningOrchestrator(
        gateway,
        reconciler,
        session_factory=session_factory,
        funding_days=config.channel_funding_days,
        timeout=config.provision_timeout_seconds,
    )
    app.state.webhook_router = WebhookRouter(
        gate,
        composer,
        session_factory=session_factory,
        default_timezone=config.default_timezone,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()

    gateway = WhapiGateway.from_settings(settings)
    completion = None
    if settings.anthropic_api_key:
        completion = AnthropicCompletionProvider(settings.anthropic_api_key, settings.completion_model)
    else:
        logger.warning("ANTHROPIC_API_KEY not set; automated replies are disabled")

    configure_services(app, gateway, completion)
    logger.info(f"Reply Flow started, webhook URL: {settings.webhook_url}")

    yield

    await app.state.orchestrator.shutdown()
    await gateway.aclose()
    logger.info("Reply Flow stopped")


def create_app(use_lifespan: bool = True) -> FastAPI:
    app = FastAPI(
        title="Reply Flow",
        description="Messaging channel lifecycle and automated replies",
        version="0.1.0",
        lifespan=lifespan if use_lifespan else None,
    )
    app.include_router(channels.router, prefix="/api/v1")
    app.include_router(webhook.router, prefix="/api/v1")
    app.include_router(sessions.router, prefix="/api/v1")

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()

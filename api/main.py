"""
FastAPI Application — WhatsApp webhook front door for the flow engine.

Provides:
- Webhook subscription handshake and inbound message delivery
- Tenant asset serving (header images referenced by flows)
- Health endpoint

Run with:  uvicorn api.main:app
"""
from __future__ import annotations

import json
import structlog
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, PlainTextResponse

from actions import create_default_action_registry
from channels.whatsapp_adapter import (
    WhatsAppClientPool, parse_webhook, verify_signature, verify_subscription,
)
from config.settings import Settings, load_env_files, load_settings
from context.sessions import SessionStore
from core.assets import AssetPathError, resolve_asset_file
from core.dispatcher import Dispatcher
from core.renderer import Renderer
from core.tenants import TenantResolver
from flows.cache import FlowCache
from utils.logging import configure_logging

logger = structlog.get_logger()

ASSET_CACHE_CONTROL = "public, max-age=3600"


class StartupError(RuntimeError):
    """Process-level misconfiguration; the service refuses to start."""


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

def build_dispatcher(settings: Settings) -> tuple[Dispatcher, WhatsAppClientPool]:
    """Wire every collaborator from settings. Fails fast on missing credentials."""
    if not settings.whatsapp.access_token:
        raise StartupError("WHATSAPP_TOKEN is not set")

    registry = create_default_action_registry(settings)
    flows = FlowCache(config_root=settings.config_root, known_actions=registry.names)
    channels = WhatsAppClientPool(settings.whatsapp, env=settings.env)

    dispatcher = Dispatcher(
        flows=flows,
        sessions=SessionStore(shards=settings.session_shards),
        actions=registry,
        renderer=Renderer(settings.public_base_url),
        tenants=TenantResolver(settings.tenant_by_phone_number_id, settings.default_tenant),
        channels=channels.get,
        fallback_contact_name=settings.fallback_contact_name,
    )
    return dispatcher, channels


def create_app(
    settings: Optional[Settings] = None,
    dispatcher: Optional[Dispatcher] = None,
) -> FastAPI:
    """
    Build the application. With no dispatcher given, one is wired from the
    settings when the app starts up.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal settings
        if settings is None:
            load_env_files()
            settings = load_settings()
        configure_logging(settings.env)
        app.state.settings = settings

        pool = None
        if dispatcher is None:
            app.state.dispatcher, pool = build_dispatcher(settings)
        else:
            app.state.dispatcher = dispatcher

        logger.info("flowly_started",
                    env=settings.env,
                    default_tenant=settings.default_tenant,
                    config_root=settings.config_root)
        yield

        if pool is not None:
            await pool.shutdown()
        logger.info("flowly_stopped")

    app = FastAPI(
        title="Flowly",
        description="Multi-tenant WhatsApp flow bot",
        version="1.0.0",
        lifespan=lifespan,
    )
    _register_routes(app)
    return app


# ══════════════════════════════════════════════════════════════
#  ROUTES
# ══════════════════════════════════════════════════════════════

def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    async def health(request: Request):
        dispatcher: Dispatcher = request.app.state.dispatcher
        return {"status": "healthy", **dispatcher.stats()}

    # ── WhatsApp webhook ──────────────────────────────────────

    @app.get("/webhook")
    async def whatsapp_verify(request: Request):
        settings: Settings = request.app.state.settings
        challenge = verify_subscription(dict(request.query_params), settings.whatsapp.verify_token)
        if challenge is None:
            logger.warning("webhook_verification_failed")
            raise HTTPException(403, "Verification failed")
        return PlainTextResponse(challenge)

    @app.post("/webhook")
    async def whatsapp_webhook(request: Request):
        """Receive WhatsApp messages. Always acknowledges once the body is read."""
        settings: Settings = request.app.state.settings
        dispatcher: Dispatcher = request.app.state.dispatcher
        body_bytes = await request.body()

        signature = request.headers.get("X-Hub-Signature-256", "")
        if not verify_signature(body_bytes, signature, settings.whatsapp.app_secret):
            logger.warning("whatsapp_webhook_signature_invalid")
            raise HTTPException(403, "Invalid signature")

        try:
            payload = json.loads(body_bytes)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning("whatsapp_webhook_malformed", error=str(e))
            return {"status": "ok"}
        if not isinstance(payload, dict):
            logger.warning("whatsapp_webhook_malformed", error="payload is not an object")
            return {"status": "ok"}

        events = parse_webhook(payload)
        results = await dispatcher.handle_events(events)
        return {"status": "ok", "processed": len(results)}

    # ── Tenant assets ─────────────────────────────────────────

    @app.get("/tenants/{tenant}/assets/{asset_path:path}")
    async def tenant_asset(tenant: str, asset_path: str, request: Request):
        settings: Settings = request.app.state.settings
        try:
            path = resolve_asset_file(settings.config_root, tenant, asset_path)
        except AssetPathError:
            logger.warning("asset_path_rejected", tenant=tenant, path=asset_path)
            raise HTTPException(400, "Invalid asset path")
        if not path.is_file():
            raise HTTPException(404, "Asset not found")
        return FileResponse(path, headers={"Cache-Control": ASSET_CACHE_CONTROL})


app = create_app()

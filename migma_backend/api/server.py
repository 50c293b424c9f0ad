"""
MIGMA Payments Server
=====================
FastAPI surface of the payment pipeline:
- POST /checkout/parcelow, /checkout/wise   create (or simulate) a checkout
- /webhooks/parcelow, /webhooks/wise        provider callbacks (GET = liveness)
- POST /zelle/notify                        replay fan-out after manual approval
- GET /health

Webhooks always acknowledge with 200 once reconciliation ran, even when a
best-effort side effect later fails.

pip install -e .  &&  uvicorn migma_backend.api.server:app
"""

import json
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from migma_backend import __version__
from migma_backend.api.container import Container, build_container
from migma_backend.api.schemas import (
    HealthResponse,
    ParcelowCheckoutRequest,
    WebhookAck,
    WiseCheckoutRequest,
    ZelleNotifyRequest,
    ZelleNotifyResponse,
)
from migma_backend.config import AppConfig
from migma_backend.errors import PaymentsError, ValidationError
from migma_backend.logging_setup import configure_logging
from migma_backend.pipeline import WebhookReconciler

logger = structlog.get_logger().bind(component="server")

CORRELATION_HEADER = "X-Correlation-Id"


def get_container(request: Request) -> Container:
    return request.app.state.container


def create_app(container: Optional[Container] = None) -> FastAPI:
    """Build the app; tests pass a pre-wired container."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if container is None:
            config = AppConfig.from_env()
            configure_logging(config.log_level)
            app.state.container = await build_container(config)
        else:
            app.state.container = container
        app.state.started_at = datetime.utcnow()
        logger.info("server_starting", version=__version__, store=app.state.container.store_backend)

        yield

        logger.info("server_shutting_down", pending=app.state.container.queue.pending)
        await app.state.container.close()

    app = FastAPI(
        title="MIGMA Payments",
        description="Checkout, webhook reconciliation and post-payment fan-out",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # MIDDLEWARE
    # =========================================================================

    @app.middleware("http")
    async def correlation_and_timing(request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid4())
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers[CORRELATION_HEADER] = correlation_id
        return response

    @app.exception_handler(PaymentsError)
    async def payments_error_handler(request: Request, exc: PaymentsError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "request_failed",
            path=request.url.path,
            status=exc.status_code,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    @app.post("/checkout/parcelow")
    async def parcelow_checkout(body: ParcelowCheckoutRequest, container: Container = Depends(get_container)):
        checkout = container.get_parcelow_checkout()
        if body.action == "simulate":
            if body.amount_usd is None:
                raise ValidationError("amount_usd is required for simulation")
            simulation = await checkout.simulate(body.amount_usd)
            return {"success": True, "action": "simulate", "data": simulation.model_dump()}

        if not body.order_id:
            raise ValidationError("order_id is required")
        result = await checkout.create_checkout(body.order_id, body.currency)
        return result.model_dump()

    @app.post("/checkout/wise")
    async def wise_checkout(body: WiseCheckoutRequest, container: Container = Depends(get_container)):
        result = await container.get_wise_checkout().create_checkout(body.order_id, body.client_currency)
        return result.model_dump()

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    async def receive_webhook(request: Request, reconciler: WebhookReconciler):
        raw = await request.body()
        reconciler.verify_signature(raw, request.headers)

        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("webhook_invalid_json", provider=reconciler.provider.value)
            return JSONResponse(status_code=400, content={"error": "Invalid JSON"})
        if not isinstance(payload, dict):
            return JSONResponse(status_code=400, content={"error": "Invalid JSON"})

        try:
            result = await reconciler.handle(payload)
        except PaymentsError:
            raise
        except Exception as e:
            logger.exception("webhook_processing_failed", provider=reconciler.provider.value, error=str(e))
            return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})

        return WebhookAck(outcome=result.outcome.value).model_dump()

    @app.post("/webhooks/parcelow")
    async def parcelow_webhook(request: Request, container: Container = Depends(get_container)):
        return await receive_webhook(request, container.parcelow_webhooks)

    @app.post("/webhooks/wise")
    async def wise_webhook(request: Request, container: Container = Depends(get_container)):
        return await receive_webhook(request, container.wise_webhooks)

    @app.get("/webhooks/{provider}")
    async def webhook_liveness(provider: str):
        if provider not in ("parcelow", "wise"):
            return JSONResponse(status_code=404, content={"error": f"Unknown provider: {provider}"})
        return {"status": "ok", "provider": provider}

    @app.options("/webhooks/{provider}")
    async def webhook_options(provider: str):
        return Response(status_code=200)

    # =========================================================================
    # MANUAL APPROVAL
    # =========================================================================

    @app.post("/zelle/notify", response_model=ZelleNotifyResponse)
    async def zelle_notify(body: ZelleNotifyRequest, container: Container = Depends(get_container)):
        result = await container.manual_approval.notify(body.order_id)
        return ZelleNotifyResponse(
            order_id=result.order_id, outcome=result.outcome.value, side_effects=result.side_effects
        )

    # =========================================================================
    # HEALTH
    # =========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request, container: Container = Depends(get_container)):
        uptime = (datetime.utcnow() - request.app.state.started_at).total_seconds()
        return HealthResponse(
            status="healthy",
            version=__version__,
            uptime_seconds=uptime,
            store=container.store_backend,
            pending_side_effects=container.queue.pending,
        )

    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "migma_backend.api.server:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level="info",
    )

import json
import logging
from typing import Optional

import stripe
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from booking_config import Settings, configure_logging, get_settings
from booking_errors import (
    BookingEngineError,
    InvalidSignature,
    NotFound,
    PaymentAlreadySettled,
    TransientError,
    ValidationError,
)
from booking_orchestrator import BookingOrchestrator, build_orchestrator
from booking_schemas import GatewayOutcome, GatewayResult
from payments.checkout import result_from_event, verify_gateway_signature

logger = logging.getLogger(__name__)

_STATUS_CODES = [
    (NotFound, 404),
    (PaymentAlreadySettled, 409),
    (ValidationError, 400),
    (InvalidSignature, 400),
    # 503 makes the gateway redeliver later
    (TransientError, 503),
]


class GatewayCallback(BaseModel):
    payment_id: str
    outcome: GatewayOutcome
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    gateway_signature: Optional[str] = None
    method: Optional[str] = None


def create_app(orchestrator: Optional[BookingOrchestrator] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Gateway callback receiver. Run with:
        uvicorn --factory webhooks.webhooks:create_app
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    orchestrator = orchestrator or build_orchestrator(settings)

    app = FastAPI()

    @app.exception_handler(BookingEngineError)
    async def engine_error_handler(request: Request, exc: BookingEngineError):
        status_code = 422
        for kind, code in _STATUS_CODES:
            if isinstance(exc, kind):
                status_code = code
                break
        logger.warning(f"{request.url.path}: {type(exc).__name__}: {exc}")
        return JSONResponse(status_code=status_code, content={"error": type(exc).__name__, "detail": str(exc)})

    def apply_result(result: GatewayResult):
        return orchestrator.reconciliation.apply_gateway_result(
            result.payment_id,
            result.outcome,
            gateway_payment_id=result.gateway_payment_id,
            gateway_signature=result.gateway_signature,
            method=result.method,
            gateway_order_id=result.gateway_order_id,
        )

    @app.post("/webhook/stripe")
    async def stripe_webhook(request: Request, stripe_signature: Optional[str] = Header(None)):
        payload = await request.body()
        if settings.stripe_webhook_secret:
            if not stripe_signature:
                raise HTTPException(status_code=400, detail="Missing Stripe signature")
            try:
                stripe.WebhookSignature.verify_header(
                    payload.decode("utf-8"), stripe_signature, settings.stripe_webhook_secret
                )
            except stripe.SignatureVerificationError:
                raise HTTPException(status_code=400, detail="Invalid Stripe signature")
        else:
            # only for local dev; NOT for prod
            logger.warning("STRIPE_WEBHOOK_SECRET not set; accepting unverified Stripe event")

        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Invalid JSON payload")

        result = result_from_event(event, stripe_signature)
        if result is None:
            return JSONResponse(content={"received": True})

        payment = await run_in_threadpool(apply_result, result)
        return JSONResponse(content={"received": True, "payment_status": payment.status.value})

    @app.post("/webhook/gateway")
    async def gateway_webhook(callback: GatewayCallback):
        """
        Generic provider callback: {"payment_id", "outcome", "gateway_order_id",
        "gateway_payment_id", "gateway_signature", ...}
        """
        if settings.gateway_webhook_secret:
            verify_gateway_signature(
                callback.gateway_order_id,
                callback.gateway_payment_id,
                callback.gateway_signature,
                settings.gateway_webhook_secret,
            )
        result = GatewayResult(**callback.model_dump())
        payment = await run_in_threadpool(apply_result, result)
        return JSONResponse(content={"ok": True, "payment_status": payment.status.value})

    @app.get("/health")
    def health_check():
        return {"status": "healthy"}

    app.state.orchestrator = orchestrator
    return app

from __future__ import annotations

import hmac
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import SQLAlchemyError

from config import API_HOST, API_PORT, APP_VERSION, LOG_LEVEL, SettlementConfig, load_settlement_config
from errors import error_body
from observability import bind_request_id, configure_json_logging, get_logger, log_event
from settlement import (
    SIGNATURE_HEADER,
    BasePaymentProvider,
    PaymentProviderError,
    RouteResult,
    SettlementError,
    SettlementRepository,
    SettlementService,
    WebhookEvent,
    check_database,
    get_payment_provider,
    init_settlement_db,
    parse_webhook_event,
    session_scope,
    start_credit_purchase,
    verify_paymongo_signature,
)
from settlement.db import SessionFactory

configure_json_logging(level=getattr(logging, LOG_LEVEL, logging.INFO))
APP_LOGGER = get_logger("geminiagri.settlement.api")

REQUEST_ID_HEADER = "X-Request-Id"
WEBHOOK_PATH = "/webhooks/paymongo"


class CreditPurchaseRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str
    credits: int
    amount_centavos: int
    payment_method: str
    redirect_url: str
    bank_code: Optional[str] = None


class CreditPurchaseResponse(BaseModel):
    order_id: str
    provider: str
    payment_method: str
    external_reference: str
    checkout_url: Optional[str] = None
    client_key: Optional[str] = None
    status: Optional[str] = None


def _request_id(request: Request) -> str:
    raw = str(getattr(request.state, "request_id", "") or "").strip()
    if raw:
        return raw
    return uuid.uuid4().hex


def _extract_bearer_token(header: Optional[str]) -> str:
    raw = str(header or "").strip()
    if not raw.lower().startswith("bearer "):
        return ""
    return raw[7:].strip()


def create_app(
    config: Optional[SettlementConfig] = None,
    session_factory: Optional[SessionFactory] = None,
    provider: Optional[BasePaymentProvider] = None,
) -> FastAPI:
    settings = config or load_settlement_config()
    payment_provider = provider or get_payment_provider(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if not settings.webhook_secret:
            log_event(
                APP_LOGGER,
                logging.ERROR,
                "settlement.config.webhook_secret_missing",
                app_env=settings.app_env,
                unsigned_webhooks="rejected" if settings.is_production else "accepted",
            )
        if settings.bootstrap_db and session_factory is None:
            init_settlement_db()
        yield

    app = FastAPI(title="GeminiAgri Settlement", version=APP_VERSION, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "apikey",
            "x-client-info",
            SIGNATURE_HEADER,
            REQUEST_ID_HEADER,
        ],
        expose_headers=[REQUEST_ID_HEADER],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        request_id = str(request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex).strip()[:64]
        request.state.request_id = request_id
        with bind_request_id(request_id):
            response = await call_next(request)
            log_event(
                APP_LOGGER,
                logging.INFO,
                "request.completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
            )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        request_id = _request_id(request)
        log_event(
            APP_LOGGER,
            logging.ERROR,
            "request.unhandled_exception",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            exception_type=type(exc).__name__,
            exception_message=str(exc),
        )
        return JSONResponse(
            status_code=500,
            content=error_body("INTERNAL_SERVER_ERROR", request_id=request_id),
            headers={REQUEST_ID_HEADER: request_id},
        )

    def _record_audit(
        *,
        request_id: str,
        event_type: str,
        raw_payload: str,
        outcome: str,
        signature_valid: bool,
        event: Optional[WebhookEvent] = None,
        order_id: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> None:
        try:
            with session_scope(session_factory) as session:
                SettlementRepository(session).record_audit_log(
                    request_id=request_id,
                    event_type=event_type,
                    provider_event_id=event.event_id if event else None,
                    order_id=order_id,
                    raw_payload=raw_payload,
                    signature_valid=signature_valid,
                    outcome=outcome,
                    detail=detail,
                )
        except SQLAlchemyError as exc:
            log_event(
                APP_LOGGER,
                logging.ERROR,
                "settlement.webhook.audit_failed",
                event_type=event_type,
                outcome=outcome,
                error=str(exc),
            )

    def _settle(event: WebhookEvent) -> RouteResult:
        with session_scope(session_factory) as session:
            service = SettlementService(SettlementRepository(session), payment_provider, settings)
            return service.route(event)

    def _ignored_payload(request_id: str, raw_text: str, reason: str, *, signature_valid: bool) -> Dict[str, Any]:
        log_event(APP_LOGGER, logging.ERROR, "settlement.webhook.malformed_payload", reason=reason)
        _record_audit(
            request_id=request_id,
            event_type="unknown",
            raw_payload=raw_text,
            outcome="ignored_payload",
            signature_valid=signature_valid,
            detail=reason,
        )
        return {"received": True, "request_id": request_id, "status": "ignored", "detail": reason}

    @app.options(WEBHOOK_PATH)
    async def paymongo_webhook_preflight() -> Response:
        return Response(status_code=200)

    @app.post(WEBHOOK_PATH)
    async def paymongo_webhook(request: Request) -> JSONResponse:
        request_id = _request_id(request)
        raw = await request.body()
        raw_text = raw.decode("utf-8", errors="replace")
        signature = request.headers.get(SIGNATURE_HEADER) or ""

        if not settings.webhook_secret:
            if settings.is_production:
                log_event(APP_LOGGER, logging.ERROR, "settlement.webhook.rejected", reason="webhook secret is not configured")
                _record_audit(
                    request_id=request_id,
                    event_type="unknown",
                    raw_payload=raw_text,
                    outcome="rejected_signature",
                    signature_valid=False,
                    detail="webhook secret is not configured",
                )
                return JSONResponse(
                    status_code=401,
                    content=error_body(
                        "SIGNATURE_SECRET_MISSING",
                        details="webhook secret is not configured",
                        request_id=request_id,
                    ),
                )
            log_event(APP_LOGGER, logging.WARNING, "settlement.webhook.signature_skipped", app_env=settings.app_env)
            signature_valid = False
        else:
            check = verify_paymongo_signature(
                raw,
                signature,
                settings.webhook_secret,
                tolerance_seconds=settings.webhook_tolerance_seconds,
            )
            if not check.valid:
                log_event(APP_LOGGER, logging.WARNING, "settlement.webhook.rejected", reason=check.error)
                _record_audit(
                    request_id=request_id,
                    event_type="unknown",
                    raw_payload=raw_text,
                    outcome="rejected_signature",
                    signature_valid=False,
                    detail=check.error,
                )
                return JSONResponse(
                    status_code=401,
                    content=error_body("INVALID_SIGNATURE", details=check.error, request_id=request_id),
                )
            signature_valid = True

        try:
            payload = json.loads(raw_text)
        except ValueError as exc:
            ignored = _ignored_payload(request_id, raw_text, f"invalid JSON: {exc}", signature_valid=signature_valid)
            return JSONResponse(content=ignored)
        try:
            event = parse_webhook_event(payload)
        except SettlementError as exc:
            ignored = _ignored_payload(request_id, raw_text, str(exc), signature_valid=signature_valid)
            return JSONResponse(content=ignored)

        log_event(
            APP_LOGGER,
            logging.INFO,
            "settlement.webhook.received",
            event_type=event.event_type,
            event_id=event.event_id,
            resource_id=event.resource_id,
        )
        try:
            result = await run_in_threadpool(_settle, event)
        except SQLAlchemyError as exc:
            log_event(
                APP_LOGGER,
                logging.ERROR,
                "settlement.webhook.persistence_failed",
                event_type=event.event_type,
                event_id=event.event_id,
                error=str(exc),
            )
            result = RouteResult(
                status="failed",
                event_type=event.event_type,
                event_id=event.event_id,
                order_id=str(event.metadata.get("order_id") or "") or None,
                outcome="error",
                detail=type(exc).__name__,
            )
        except Exception as exc:  # noqa: BLE001
            _record_audit(
                request_id=request_id,
                event_type=event.event_type,
                raw_payload=raw_text,
                outcome="error",
                signature_valid=signature_valid,
                event=event,
                order_id=str(event.metadata.get("order_id") or "") or None,
                detail=str(exc),
            )
            raise

        _record_audit(
            request_id=request_id,
            event_type=event.event_type,
            raw_payload=raw_text,
            outcome=result.status,
            signature_valid=signature_valid,
            event=event,
            order_id=result.order_id,
            detail=json.dumps(result.as_dict(), ensure_ascii=False),
        )
        return JSONResponse(content={"received": True, "request_id": request_id, **result.as_dict()})

    @app.post("/payments/credit-purchases", response_model=CreditPurchaseResponse)
    def create_credit_purchase(payload: CreditPurchaseRequest, request: Request) -> Any:
        request_id = _request_id(request)
        token = _extract_bearer_token(request.headers.get("Authorization"))
        if not settings.service_token or not hmac.compare_digest(token, settings.service_token):
            return JSONResponse(status_code=401, content=error_body("UNAUTHORIZED", request_id=request_id))
        try:
            order_id, session = start_credit_purchase(
                payment_provider,
                settings,
                user_id=payload.user_id,
                credits=payload.credits,
                amount_centavos=payload.amount_centavos,
                payment_method=payload.payment_method,
                redirect_url=payload.redirect_url,
                bank_code=payload.bank_code,
            )
        except SettlementError as exc:
            return JSONResponse(
                status_code=400,
                content=error_body("INVALID_CHECKOUT_REQUEST", details=str(exc), request_id=request_id),
            )
        except PaymentProviderError as exc:
            log_event(APP_LOGGER, logging.ERROR, "settlement.checkout.provider_failed", error=str(exc))
            return JSONResponse(
                status_code=502,
                content=error_body("PROVIDER_UNAVAILABLE", details=str(exc), request_id=request_id),
            )
        return CreditPurchaseResponse(
            order_id=order_id,
            provider=session.provider,
            payment_method=session.payment_method,
            external_reference=session.external_reference,
            checkout_url=session.checkout_url,
            client_key=session.client_key,
            status=session.status,
        )

    @app.get("/health")
    def health() -> Dict[str, Any]:
        db_ok, db_error = check_database(session_factory)
        details: Dict[str, Any] = {
            "webhook_secret_configured": bool(settings.webhook_secret),
            "provider": payment_provider.name,
            "provider_key_configured": payment_provider.name == "mock" or bool(settings.provider_secret_key),
        }
        if db_error:
            details["db_error"] = db_error
        ready = db_ok and details["webhook_secret_configured"] and details["provider_key_configured"]
        return {
            "status": "ok" if ready else "degraded",
            "version": APP_VERSION,
            "db": "ok" if db_ok else "error",
            "details": details,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Final, Literal, Mapping, Optional

from config import SettlementConfig
from observability import get_logger, log_event

from .credits import CreditSettlementApplier, credit_grant_idempotency_key
from .models import OrderKind, OrderStatus
from .order_fsm import OrderTransitionGuard, TransitionResult, is_payment_transition_allowed
from .provider import (
    BANK_TRANSFER_CODES,
    BANK_TRANSFER_METHOD,
    SUPPORTED_PAYMENT_METHODS,
    BasePaymentProvider,
    CheckoutSession,
    PaymentProviderError,
)
from .repository import SettlementRepository
from .targets import (
    ORDER_KIND_METADATA_KEY,
    CreditPurchaseTarget,
    PhysicalOrderTarget,
    SettlementTarget,
    parse_positive_int,
    resolve_settlement_target,
)

_LOGGER = get_logger("geminiagri.settlement.service")

SUCCESS_EVENT_TYPES: Final[frozenset[str]] = frozenset(
    {"payment.paid", "payment_intent.succeeded", "checkout_session.payment.paid"}
)
FAILURE_EVENT_TYPES: Final[frozenset[str]] = frozenset({"payment.failed", "payment_intent.payment_failed"})
SOURCE_CHARGEABLE_EVENT: Final[str] = "source.chargeable"

RouteStatus = Literal["processed", "ignored", "failed"]


class SettlementError(RuntimeError):
    pass


@dataclass(frozen=True)
class WebhookEvent:
    event_id: Optional[str]
    event_type: str
    resource_id: Optional[str]
    resource_type: Optional[str]
    attributes: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RouteResult:
    status: RouteStatus
    event_type: str
    event_id: Optional[str] = None
    order_id: Optional[str] = None
    order_kind: Optional[str] = None
    outcome: Optional[str] = None
    detail: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"status": self.status, "event_type": self.event_type}
        for key in ("event_id", "order_id", "order_kind", "outcome", "detail"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _extract_metadata(attributes: Mapping[str, Any]) -> Dict[str, Any]:
    metadata = _as_dict(attributes.get("metadata"))
    if metadata:
        return dict(metadata)
    # Checkout sessions carry metadata on the nested payments as well.
    payments = attributes.get("payments")
    if isinstance(payments, list):
        for payment in payments:
            nested = _as_dict(_as_dict(_as_dict(payment).get("attributes")).get("metadata"))
            if nested:
                return dict(nested)
    return {}


def parse_webhook_event(payload: Any) -> WebhookEvent:
    """
    Unwrap a PayMongo event envelope:
    `{"data": {"id", "attributes": {"type", "data": {"id", "type", "attributes"}}}}`.
    """

    if not isinstance(payload, dict):
        raise SettlementError("webhook payload must be a JSON object")
    envelope = payload.get("data")
    if not isinstance(envelope, dict):
        raise SettlementError("webhook payload has no data object")
    event_attributes = _as_dict(envelope.get("attributes"))
    event_type = str(event_attributes.get("type") or "").strip()
    if not event_type:
        raise SettlementError("webhook payload has no event type")
    resource = _as_dict(event_attributes.get("data"))
    attributes = _as_dict(resource.get("attributes"))
    return WebhookEvent(
        event_id=str(envelope.get("id") or "").strip() or None,
        event_type=event_type,
        resource_id=str(resource.get("id") or "").strip() or None,
        resource_type=str(resource.get("type") or "").strip() or None,
        attributes=attributes,
        metadata=_extract_metadata(attributes),
    )


class SettlementService:
    """Routes verified PayMongo events to the order guard or the credit applier."""

    def __init__(
        self,
        repo: SettlementRepository,
        provider: BasePaymentProvider,
        config: SettlementConfig,
    ) -> None:
        self.repo = repo
        self.provider = provider
        self.config = config
        self.guard = OrderTransitionGuard(repo)
        self.credits = CreditSettlementApplier(repo)

    def route(self, event: WebhookEvent) -> RouteResult:
        event_type = event.event_type
        if (
            event_type not in SUCCESS_EVENT_TYPES
            and event_type not in FAILURE_EVENT_TYPES
            and event_type != SOURCE_CHARGEABLE_EVENT
        ):
            log_event(
                _LOGGER,
                logging.INFO,
                "settlement.webhook.ignored",
                reason="unhandled event type",
                event_type=event_type,
                event_id=event.event_id,
            )
            return RouteResult(status="ignored", event_type=event_type, event_id=event.event_id, detail="unhandled event type")

        target = resolve_settlement_target(event.metadata, credit_order_prefix=self.config.credit_order_prefix)
        if target is None:
            log_event(
                _LOGGER,
                logging.WARNING,
                "settlement.webhook.ignored",
                reason="missing order_id in metadata",
                event_type=event_type,
                event_id=event.event_id,
            )
            return RouteResult(status="ignored", event_type=event_type, event_id=event.event_id, detail="missing order_id")

        if event_type == SOURCE_CHARGEABLE_EVENT:
            return self._handle_source_chargeable(event, target)
        if event_type in SUCCESS_EVENT_TYPES:
            return self._settle_success(event, target, payment_reference=event.resource_id)
        return self._settle_failure(event, target, reason="payment failed")

    def _settle_success(
        self,
        event: WebhookEvent,
        target: SettlementTarget,
        *,
        payment_reference: Optional[str],
    ) -> RouteResult:
        if isinstance(target, CreditPurchaseTarget):
            applied = self.credits.apply(target, provider_event_id=event.event_id)
            if not applied:
                return self._failed(event, target, outcome="credits_not_applied")
            return RouteResult(
                status="processed",
                event_type=event.event_type,
                event_id=event.event_id,
                order_id=target.order_id,
                order_kind=target.kind.value,
                outcome="credits_applied",
            )
        result = self.guard.transition(target.order_id, OrderStatus.TO_SHIP, payment_reference=payment_reference)
        return self._from_transition(event, target, result)

    def _settle_failure(self, event: WebhookEvent, target: SettlementTarget, *, reason: str) -> RouteResult:
        if isinstance(target, CreditPurchaseTarget):
            # Credit purchases have no order row; the user simply keeps their balance.
            log_event(
                _LOGGER,
                logging.INFO,
                "settlement.credits.payment_failed",
                order_id=target.order_id,
                user_id=target.user_id,
                reason=reason,
            )
            return RouteResult(
                status="processed",
                event_type=event.event_type,
                event_id=event.event_id,
                order_id=target.order_id,
                order_kind=target.kind.value,
                outcome="no_mutation",
                detail=reason,
            )
        result = self.guard.transition(target.order_id, OrderStatus.PAYMENT_FAILED)
        return self._from_transition(event, target, result, detail=reason)

    def _handle_source_chargeable(self, event: WebhookEvent, target: SettlementTarget) -> RouteResult:
        if isinstance(target, PhysicalOrderTarget):
            current = self.repo.get_order_status(target.order_id)
            if current is None or not is_payment_transition_allowed(current, OrderStatus.TO_SHIP):
                # Nothing to charge for; let the guard report not_found / unchanged / stale.
                result = self.guard.transition(target.order_id, OrderStatus.TO_SHIP)
                return self._from_transition(event, target, result)
        elif self.repo.get_credit_grant(credit_grant_idempotency_key(target.order_id)) is not None:
            # Credited by an earlier delivery; the source must not be charged again.
            log_event(
                _LOGGER,
                logging.INFO,
                "settlement.credits.duplicate",
                order_id=target.order_id,
                user_id=target.user_id,
                provider_event_id=event.event_id,
            )
            return RouteResult(
                status="processed",
                event_type=event.event_type,
                event_id=event.event_id,
                order_id=target.order_id,
                order_kind=target.kind.value,
                outcome="duplicate",
            )

        source_id = event.resource_id
        amount = parse_positive_int(event.attributes.get("amount"))
        currency = str(event.attributes.get("currency") or self.config.default_currency).upper()
        if not source_id or amount is None:
            return self._settle_failure(event, target, reason="chargeable source has no id or amount")

        try:
            payment = self.provider.create_payment(
                source_id=source_id,
                amount_centavos=amount,
                currency=currency,
                description=f"GeminiAgri order {target.order_id}",
                metadata=event.metadata,
            )
        except PaymentProviderError as exc:
            log_event(
                _LOGGER,
                logging.ERROR,
                "settlement.provider.payment_failed",
                order_id=target.order_id,
                source_id=source_id,
                error=str(exc),
            )
            return self._settle_failure(event, target, reason=f"payment creation failed: {exc}")

        if not payment.is_paid:
            log_event(
                _LOGGER,
                logging.WARNING,
                "settlement.provider.payment_not_paid",
                order_id=target.order_id,
                source_id=source_id,
                payment_id=payment.payment_id,
                payment_status=payment.status,
            )
            return self._settle_failure(event, target, reason=f"payment status {payment.status or 'unknown'}")

        return self._settle_success(event, target, payment_reference=payment.payment_id or source_id)

    def _from_transition(
        self,
        event: WebhookEvent,
        target: SettlementTarget,
        result: TransitionResult,
        *,
        detail: Optional[str] = None,
    ) -> RouteResult:
        if not result.success:
            return self._failed(event, target, outcome=result.outcome, detail=result.error)
        return RouteResult(
            status="processed",
            event_type=event.event_type,
            event_id=event.event_id,
            order_id=target.order_id,
            order_kind=target.kind.value,
            outcome=result.outcome,
            detail=detail,
        )

    def _failed(
        self,
        event: WebhookEvent,
        target: SettlementTarget,
        *,
        outcome: str,
        detail: Optional[str] = None,
    ) -> RouteResult:
        log_event(
            _LOGGER,
            logging.ERROR,
            "settlement.webhook.settlement_failed",
            event_type=event.event_type,
            event_id=event.event_id,
            order_id=target.order_id,
            order_kind=target.kind.value,
            outcome=outcome,
            detail=detail,
        )
        return RouteResult(
            status="failed",
            event_type=event.event_type,
            event_id=event.event_id,
            order_id=target.order_id,
            order_kind=target.kind.value,
            outcome=outcome,
            detail=detail,
        )


def new_credit_order_id(prefix: str) -> str:
    return f"{prefix}{uuid.uuid4().hex[:16].upper()}"


def start_credit_purchase(
    provider: BasePaymentProvider,
    config: SettlementConfig,
    *,
    user_id: str,
    credits: Any,
    amount_centavos: Any,
    payment_method: str,
    redirect_url: str,
    bank_code: Optional[str] = None,
) -> tuple[str, CheckoutSession]:
    """
    Open a provider checkout for a scan-credit bundle.

    No order row is written: the purchase is identified by a fresh
    credit-order id and tagged through provider metadata, which the webhook
    reads back when the payment settles.
    """

    owner = str(user_id or "").strip()
    if not owner:
        raise SettlementError("user_id is required")
    credit_count = parse_positive_int(credits)
    if credit_count is None:
        raise SettlementError("credits must be a positive integer")
    amount = parse_positive_int(amount_centavos)
    if amount is None:
        raise SettlementError("amount_centavos must be a positive integer")
    method = str(payment_method or "").strip().lower()
    if method not in SUPPORTED_PAYMENT_METHODS:
        raise SettlementError(f"unsupported payment method: {payment_method}")
    bank = str(bank_code or "").strip().lower() or None
    if method == BANK_TRANSFER_METHOD and bank not in BANK_TRANSFER_CODES:
        raise SettlementError(f"unsupported bank code: {bank_code}")
    redirect = str(redirect_url or "").strip()
    if not redirect:
        raise SettlementError("redirect_url is required")

    order_id = new_credit_order_id(config.credit_order_prefix)
    metadata = {
        "order_id": order_id,
        "user_id": owner,
        # Provider metadata values must be strings.
        "credits": str(credit_count),
        ORDER_KIND_METADATA_KEY: OrderKind.CREDIT_PURCHASE.value,
    }
    session = provider.create_checkout(
        order_id=order_id,
        amount_centavos=amount,
        currency=config.default_currency,
        payment_method=method,
        redirect_url=redirect,
        description=f"GeminiAgri {credit_count} scan credits",
        metadata=metadata,
        bank_code=bank,
    )
    log_event(
        _LOGGER,
        logging.INFO,
        "settlement.checkout.created",
        order_id=order_id,
        user_id=owner,
        credits=credit_count,
        amount_centavos=amount,
        payment_method=method,
        provider=session.provider,
        external_reference=session.external_reference,
    )
    return order_id, session

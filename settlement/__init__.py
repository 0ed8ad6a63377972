from .credits import CreditSettlementApplier, credit_grant_idempotency_key
from .db import (
    build_session_factory,
    check_database,
    default_session_factory,
    init_settlement_db,
    session_scope,
)
from .models import (
    Base,
    CreditGrant,
    Order,
    OrderKind,
    OrderStatus,
    UserCredits,
    WebhookAuditLog,
)
from .order_fsm import (
    ADVANCED_STATUSES,
    HELD_STATUSES,
    PAYMENT_TRANSITIONS,
    OrderTransitionGuard,
    TransitionResult,
)
from .provider import (
    BasePaymentProvider,
    CheckoutSession,
    MockPaymentProvider,
    PaymentProviderError,
    PaymongoProvider,
    ProviderPayment,
    get_payment_provider,
)
from .repository import SettlementRepository, SettlementStateError
from .service import (
    RouteResult,
    SettlementError,
    SettlementService,
    WebhookEvent,
    parse_webhook_event,
    start_credit_purchase,
)
from .signature import (
    SIGNATURE_HEADER,
    SignatureCheck,
    build_signature_header,
    verify_paymongo_signature,
)
from .targets import CreditPurchaseTarget, PhysicalOrderTarget, resolve_settlement_target

__all__ = [
    "Base",
    "Order",
    "UserCredits",
    "CreditGrant",
    "WebhookAuditLog",
    "OrderStatus",
    "OrderKind",
    "build_session_factory",
    "check_database",
    "default_session_factory",
    "init_settlement_db",
    "session_scope",
    "SettlementRepository",
    "SettlementStateError",
    "ADVANCED_STATUSES",
    "HELD_STATUSES",
    "PAYMENT_TRANSITIONS",
    "OrderTransitionGuard",
    "TransitionResult",
    "CreditSettlementApplier",
    "credit_grant_idempotency_key",
    "PhysicalOrderTarget",
    "CreditPurchaseTarget",
    "resolve_settlement_target",
    "BasePaymentProvider",
    "CheckoutSession",
    "MockPaymentProvider",
    "PaymongoProvider",
    "PaymentProviderError",
    "ProviderPayment",
    "get_payment_provider",
    "SIGNATURE_HEADER",
    "SignatureCheck",
    "build_signature_header",
    "verify_paymongo_signature",
    "RouteResult",
    "SettlementError",
    "SettlementService",
    "WebhookEvent",
    "parse_webhook_event",
    "start_credit_purchase",
]

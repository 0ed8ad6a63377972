from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Final, Literal, Optional

from sqlalchemy.exc import SQLAlchemyError

from observability import get_logger, log_event

from .models import OrderStatus
from .repository import SettlementRepository

_LOGGER = get_logger("geminiagri.settlement.order_fsm")

TransitionOutcome = Literal["applied", "unchanged", "stale", "not_found", "error"]

# Statuses reached after payment. Payment events never move an order out of them.
ADVANCED_STATUSES: Final[frozenset[OrderStatus]] = frozenset(
    {
        OrderStatus.TO_SHIP,
        OrderStatus.TO_RECEIVE,
        OrderStatus.COMPLETED,
        OrderStatus.CANCELLED,
    }
)

# Buyer cancellation requests and refund cases. Settled by hand, never by payment events.
HELD_STATUSES: Final[frozenset[OrderStatus]] = frozenset(
    {
        OrderStatus.PENDING_CANCELLATION,
        OrderStatus.RETURN_REFUND,
    }
)

# Legal (from, to) pairs for automated payment settlement.
_PAYMENT_TARGETS: Final[frozenset[OrderStatus]] = frozenset({OrderStatus.TO_SHIP, OrderStatus.PAYMENT_FAILED})
PAYMENT_TRANSITIONS: Final[dict[OrderStatus, frozenset[OrderStatus]]] = {
    OrderStatus.TO_PAY: _PAYMENT_TARGETS,
    OrderStatus.PAYMENT_FAILED: _PAYMENT_TARGETS,
    OrderStatus.PENDING_CANCELLATION: frozenset(),
    OrderStatus.RETURN_REFUND: frozenset(),
    OrderStatus.TO_SHIP: frozenset(),
    OrderStatus.TO_RECEIVE: frozenset(),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

_MAX_CAS_ATTEMPTS: Final[int] = 3


def is_payment_transition_allowed(current: OrderStatus, target: OrderStatus) -> bool:
    return target in PAYMENT_TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class TransitionResult:
    success: bool
    outcome: TransitionOutcome
    order_id: str
    status: Optional[OrderStatus] = None
    previous_status: Optional[OrderStatus] = None
    error: Optional[str] = None

    def as_dict(self) -> dict[str, Optional[str]]:
        return {
            "order_id": self.order_id,
            "outcome": self.outcome,
            "status": self.status.value if self.status else None,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "error": self.error,
        }


class OrderTransitionGuard:
    """
    Applies payment-driven status changes to persisted orders.

    Redelivered or out-of-order events resolve to no-op successes instead of
    errors: the same status is `unchanged`, a status with no edge to the
    target is `stale`. Only lookup and write failures report `success=False`.
    """

    def __init__(self, repo: SettlementRepository) -> None:
        self.repo = repo

    def transition(
        self,
        order_id: str,
        target_status: OrderStatus,
        *,
        payment_reference: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        key = str(order_id or "").strip()
        target = OrderStatus(target_status)
        try:
            for _attempt in range(_MAX_CAS_ATTEMPTS):
                current = self.repo.get_order_status(key)
                if current is None:
                    log_event(_LOGGER, logging.WARNING, "settlement.order.not_found", order_id=key)
                    return TransitionResult(
                        success=False,
                        outcome="not_found",
                        order_id=key,
                        error=f"order not found: {key}",
                    )
                if current == target:
                    return TransitionResult(
                        success=True, outcome="unchanged", order_id=key, status=current, previous_status=current
                    )
                if not is_payment_transition_allowed(current, target):
                    # Payment activity on a held order needs manual review.
                    payment_on_held_order = current in HELD_STATUSES and target == OrderStatus.TO_SHIP
                    log_event(
                        _LOGGER,
                        logging.WARNING if payment_on_held_order else logging.INFO,
                        "settlement.order.payment_on_held_order" if payment_on_held_order else "settlement.order.stale_event",
                        order_id=key,
                        current_status=current.value,
                        target_status=target.value,
                    )
                    return TransitionResult(
                        success=True, outcome="stale", order_id=key, status=current, previous_status=current
                    )
                if self.repo.compare_and_set_order_status(
                    key,
                    expected=current,
                    target=target,
                    payment_reference=payment_reference,
                    now=now,
                ):
                    log_event(
                        _LOGGER,
                        logging.INFO,
                        "settlement.order.transitioned",
                        order_id=key,
                        previous_status=current.value,
                        status=target.value,
                    )
                    return TransitionResult(
                        success=True, outcome="applied", order_id=key, status=target, previous_status=current
                    )
                # Row changed between read and write; evaluate again.
        except SQLAlchemyError as exc:
            log_event(
                _LOGGER,
                logging.ERROR,
                "settlement.order.persistence_failed",
                order_id=key,
                target_status=target.value,
                error=str(exc),
            )
            return TransitionResult(success=False, outcome="error", order_id=key, error=str(exc))
        return TransitionResult(
            success=False,
            outcome="error",
            order_id=key,
            error=f"order status kept changing during transition: {key}",
        )

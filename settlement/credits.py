from __future__ import annotations

import logging
from typing import Any, Final, Optional

from sqlalchemy.exc import SQLAlchemyError

from observability import get_logger, log_event

from .repository import SettlementRepository, SettlementStateError
from .targets import CreditPurchaseTarget

_LOGGER = get_logger("geminiagri.settlement.credits")

# One grant per credit-purchase order: providers may resend with a new event id.
CREDIT_GRANT_IDEMPOTENCY_PREFIX: Final[str] = "credit-grant:order:"


def credit_grant_idempotency_key(order_id: str) -> str:
    return f"{CREDIT_GRANT_IDEMPOTENCY_PREFIX}{order_id}"


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


class CreditSettlementApplier:
    def __init__(self, repo: SettlementRepository) -> None:
        self.repo = repo

    def apply(self, target: CreditPurchaseTarget, *, provider_event_id: Optional[str] = None) -> bool:
        if not isinstance(target, CreditPurchaseTarget):
            log_event(
                _LOGGER,
                logging.ERROR,
                "settlement.credits.rejected",
                reason="not a credit purchase",
                order_id=getattr(target, "order_id", None),
            )
            return False
        return self.apply_credits(
            target.order_id,
            target.user_id,
            target.credits,
            provider_event_id=provider_event_id,
        )

    def apply_credits(
        self,
        order_id: str,
        user_id: Optional[str],
        credit_amount: Any,
        *,
        provider_event_id: Optional[str] = None,
    ) -> bool:
        """
        Increment the user's scan credits for a paid credit purchase.

        Returns True once the increment is committed to the session, or when
        an earlier delivery already applied it.
        """

        order_key = str(order_id or "").strip()
        owner = str(user_id or "").strip()
        if not order_key or not owner or not _is_positive_int(credit_amount):
            log_event(
                _LOGGER,
                logging.ERROR,
                "settlement.credits.rejected",
                reason="invalid credit purchase metadata",
                order_id=order_key or None,
                user_id=owner or None,
                credits=credit_amount,
            )
            return False

        try:
            outcome = self.repo.apply_credit_grant(
                idempotency_key=credit_grant_idempotency_key(order_key),
                user_id=owner,
                order_id=order_key,
                credits=int(credit_amount),
                provider_event_id=provider_event_id,
            )
        except (SettlementStateError, SQLAlchemyError) as exc:
            log_event(
                _LOGGER,
                logging.ERROR,
                "settlement.credits.persistence_failed",
                order_id=order_key,
                user_id=owner,
                credits=int(credit_amount),
                error=str(exc),
            )
            return False

        if outcome.duplicate:
            log_event(
                _LOGGER,
                logging.INFO,
                "settlement.credits.duplicate",
                order_id=order_key,
                user_id=owner,
                grant_id=outcome.grant_id,
                provider_event_id=provider_event_id,
            )
            return True

        log_event(
            _LOGGER,
            logging.INFO,
            "settlement.credits.applied",
            order_id=order_key,
            user_id=owner,
            credits=int(credit_amount),
            grant_id=outcome.grant_id,
            provider_event_id=provider_event_id,
        )
        return outcome.applied

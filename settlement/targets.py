from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from observability import get_logger, log_event

from .models import OrderKind

_LOGGER = get_logger("geminiagri.settlement.targets")

ORDER_KIND_METADATA_KEY = "order_kind"


@dataclass(frozen=True)
class PhysicalOrderTarget:
    order_id: str

    @property
    def kind(self) -> OrderKind:
        return OrderKind.PHYSICAL


@dataclass(frozen=True)
class CreditPurchaseTarget:
    order_id: str
    user_id: Optional[str]
    credits: Optional[int]

    @property
    def kind(self) -> OrderKind:
        return OrderKind.CREDIT_PURCHASE


SettlementTarget = Union[PhysicalOrderTarget, CreditPurchaseTarget]


def parse_positive_int(value: Any) -> Optional[int]:
    """
    Parse provider metadata into a positive int.

    PayMongo stores metadata values as strings, so "100" is accepted; bools,
    fractional floats and non-positive values are not.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            return None
        return int(value) if value > 0 else None
    raw = str(value).strip()
    if not raw:
        return None
    try:
        parsed = int(raw)
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def resolve_settlement_target(
    metadata: Mapping[str, Any],
    *,
    credit_order_prefix: str,
) -> Optional[SettlementTarget]:
    """
    Turn event metadata into a tagged settlement target.

    The `order_kind` tag written at checkout decides the variant. Events from
    checkouts that predate the tag fall back to the id prefix, logged as legacy.
    Returns None when there is no order id.
    """

    order_id = str(metadata.get("order_id") or "").strip()
    if not order_id:
        return None

    raw_kind = str(metadata.get(ORDER_KIND_METADATA_KEY) or "").strip().lower()
    kind: Optional[OrderKind]
    try:
        kind = OrderKind(raw_kind) if raw_kind else None
    except ValueError:
        log_event(_LOGGER, logging.WARNING, "settlement.target.unknown_kind", order_id=order_id, order_kind=raw_kind)
        kind = None

    if kind is None and credit_order_prefix and order_id.startswith(credit_order_prefix):
        log_event(_LOGGER, logging.WARNING, "settlement.target.legacy_prefix", order_id=order_id)
        kind = OrderKind.CREDIT_PURCHASE

    if kind == OrderKind.CREDIT_PURCHASE:
        user_id = str(metadata.get("user_id") or "").strip() or None
        return CreditPurchaseTarget(
            order_id=order_id,
            user_id=user_id,
            credits=parse_positive_int(metadata.get("credits")),
        )
    return PhysicalOrderTarget(order_id=order_id)

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Final, Literal, Optional

import httpx

from config import SettlementConfig
from observability import get_logger, log_event

ProviderName = Literal["mock", "paymongo"]

EWALLET_SOURCE_TYPES: Final[frozenset[str]] = frozenset({"gcash", "grab_pay", "maya"})
INTENT_PAYMENT_METHODS: Final[frozenset[str]] = frozenset({"card"})
BANK_TRANSFER_METHOD: Final[str] = "bank_transfer"
# Direct online banking through Brankas.
BANK_TRANSFER_CODES: Final[frozenset[str]] = frozenset({"bdo", "landbank", "metrobank"})
SUPPORTED_PAYMENT_METHODS: Final[frozenset[str]] = EWALLET_SOURCE_TYPES | INTENT_PAYMENT_METHODS | {BANK_TRANSFER_METHOD}
PAYMENT_STATUS_PAID: Final[str] = "paid"

_LOGGER = get_logger("geminiagri.settlement.provider")


class PaymentProviderError(RuntimeError):
    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class ProviderPayment:
    payment_id: str
    status: str
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.status == PAYMENT_STATUS_PAID


@dataclass(frozen=True)
class CheckoutSession:
    """
    Normalized provider checkout payload.

    E-wallet sources and bank transfers return a redirect `checkout_url`; card
    intents return a `client_key` for the app to finish the payment client-side.
    `status` is set when the provider reports one, e.g. a bank transfer that
    succeeded without a redirect.
    """

    provider: ProviderName
    payment_method: str
    external_reference: str
    checkout_url: Optional[str] = None
    client_key: Optional[str] = None
    status: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class BasePaymentProvider(abc.ABC):
    @property
    @abc.abstractmethod
    def name(self) -> ProviderName:
        raise NotImplementedError

    @abc.abstractmethod
    def create_payment(
        self,
        *,
        source_id: str,
        amount_centavos: int,
        currency: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ProviderPayment:
        """Charge a chargeable source. Raises PaymentProviderError on transport or API failure."""

    @abc.abstractmethod
    def create_checkout(
        self,
        *,
        order_id: str,
        amount_centavos: int,
        currency: str,
        payment_method: str,
        redirect_url: str,
        description: str,
        metadata: Dict[str, Any],
        bank_code: Optional[str] = None,
    ) -> CheckoutSession:
        raise NotImplementedError


class MockPaymentProvider(BasePaymentProvider):
    """In-process provider for development and tests. Never talks to the network."""

    def __init__(self, *, payment_status: str = PAYMENT_STATUS_PAID, fail_with: Optional[str] = None) -> None:
        self.payment_status = payment_status
        self.fail_with = fail_with
        self.payments: list[Dict[str, Any]] = []
        self.checkouts: list[Dict[str, Any]] = []

    @property
    def name(self) -> ProviderName:
        return "mock"

    def create_payment(
        self,
        *,
        source_id: str,
        amount_centavos: int,
        currency: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ProviderPayment:
        self.payments.append(
            {
                "source_id": source_id,
                "amount_centavos": amount_centavos,
                "currency": currency,
                "description": description,
                "metadata": dict(metadata or {}),
            }
        )
        if self.fail_with:
            raise PaymentProviderError(self.fail_with)
        return ProviderPayment(payment_id=f"pay_mock_{len(self.payments)}", status=self.payment_status)

    def create_checkout(
        self,
        *,
        order_id: str,
        amount_centavos: int,
        currency: str,
        payment_method: str,
        redirect_url: str,
        description: str,
        metadata: Dict[str, Any],
        bank_code: Optional[str] = None,
    ) -> CheckoutSession:
        self.checkouts.append(
            {
                "order_id": order_id,
                "amount_centavos": amount_centavos,
                "currency": currency,
                "payment_method": payment_method,
                "bank_code": bank_code,
                "metadata": dict(metadata),
            }
        )
        if payment_method == BANK_TRANSFER_METHOD and bank_code not in BANK_TRANSFER_CODES:
            raise PaymentProviderError(f"unsupported bank code: {bank_code}")
        if payment_method in INTENT_PAYMENT_METHODS:
            return CheckoutSession(
                provider="mock",
                payment_method=payment_method,
                external_reference=f"pi_mock_{order_id}",
                client_key=f"pi_mock_{order_id}_client",
            )
        return CheckoutSession(
            provider="mock",
            payment_method=payment_method,
            external_reference=f"src_mock_{order_id}",
            checkout_url=f"{redirect_url}?status=success&order_id={order_id}",
        )


class PaymongoProvider(BasePaymentProvider):
    def __init__(
        self,
        *,
        secret_key: str,
        api_base_url: str = "https://api.paymongo.com/v1",
        timeout_seconds: float = 10.0,
        statement_descriptor: str = "",
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.secret_key = str(secret_key or "").strip()
        self.api_base_url = str(api_base_url or "").rstrip("/")
        self.timeout_seconds = float(timeout_seconds)
        self.statement_descriptor = str(statement_descriptor or "").strip()
        self._transport = transport

    @property
    def name(self) -> ProviderName:
        return "paymongo"

    def _post(self, path: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        if not self.secret_key:
            raise PaymentProviderError("PAYMONGO_SECRET_KEY is missing")
        url = f"{self.api_base_url}{path}"
        try:
            with httpx.Client(
                auth=(self.secret_key, ""),
                timeout=self.timeout_seconds,
                transport=self._transport,
                trust_env=False,
            ) as client:
                resp = client.post(
                    url,
                    json={"data": {"attributes": attributes}},
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as exc:
            raise PaymentProviderError(f"paymongo request timed out: {path}") from exc
        except httpx.HTTPError as exc:
            raise PaymentProviderError(f"paymongo request failed: {path}: {exc}") from exc

        try:
            body = resp.json() if resp.content else {}
        except ValueError:
            body = {}
        if resp.status_code >= 400:
            detail = ""
            errors = body.get("errors") if isinstance(body, dict) else None
            if isinstance(errors, list) and errors and isinstance(errors[0], dict):
                detail = str(errors[0].get("detail") or "")
            log_event(
                _LOGGER,
                logging.WARNING,
                "settlement.provider.request_rejected",
                path=path,
                status_code=resp.status_code,
                detail=detail or (resp.text or "")[:200],
            )
            raise PaymentProviderError(
                f"paymongo {path} returned {resp.status_code}: {detail or 'request rejected'}",
                status_code=resp.status_code,
            )
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise PaymentProviderError(f"paymongo {path} returned no data", status_code=resp.status_code)
        return data

    def create_payment(
        self,
        *,
        source_id: str,
        amount_centavos: int,
        currency: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ProviderPayment:
        attributes: Dict[str, Any] = {
            "amount": int(amount_centavos),
            "currency": str(currency or "PHP").upper(),
            "description": description,
            "source": {"id": source_id, "type": "source"},
        }
        if metadata:
            attributes["metadata"] = dict(metadata)
        if self.statement_descriptor:
            attributes["statement_descriptor"] = self.statement_descriptor
        data = self._post("/payments", attributes)
        status = str((data.get("attributes") or {}).get("status") or "").strip().lower()
        return ProviderPayment(payment_id=str(data.get("id") or ""), status=status, raw=data)

    def create_source(
        self,
        *,
        order_id: str,
        amount_centavos: int,
        currency: str,
        source_type: str,
        redirect_url: str,
        metadata: Dict[str, Any],
    ) -> CheckoutSession:
        data = self._post(
            "/sources",
            {
                "amount": int(amount_centavos),
                "currency": str(currency or "PHP").upper(),
                "type": source_type,
                "redirect": {
                    "success": f"{redirect_url}?status=success&order_id={order_id}",
                    "failed": f"{redirect_url}?status=failed&order_id={order_id}",
                },
                "metadata": dict(metadata),
            },
        )
        redirect = (data.get("attributes") or {}).get("redirect") or {}
        checkout_url = str(redirect.get("checkout_url") or "").strip()
        if not checkout_url:
            raise PaymentProviderError("paymongo source has no checkout_url")
        return CheckoutSession(
            provider="paymongo",
            payment_method=source_type,
            external_reference=str(data.get("id") or ""),
            checkout_url=checkout_url,
            raw=data,
        )

    def create_payment_intent(
        self,
        *,
        amount_centavos: int,
        currency: str,
        payment_method: str,
        description: str,
        metadata: Dict[str, Any],
    ) -> CheckoutSession:
        attributes: Dict[str, Any] = {
            "amount": int(amount_centavos),
            "currency": str(currency or "PHP").upper(),
            "payment_method_allowed": [payment_method],
            "description": description,
            "metadata": dict(metadata),
        }
        if self.statement_descriptor:
            attributes["statement_descriptor"] = self.statement_descriptor
        data = self._post("/payment_intents", attributes)
        return CheckoutSession(
            provider="paymongo",
            payment_method=payment_method,
            external_reference=str(data.get("id") or ""),
            client_key=str((data.get("attributes") or {}).get("client_key") or "") or None,
            raw=data,
        )

    def create_bank_transfer(
        self,
        *,
        order_id: str,
        amount_centavos: int,
        currency: str,
        bank_code: Optional[str],
        redirect_url: str,
        description: str,
        metadata: Dict[str, Any],
    ) -> CheckoutSession:
        """
        Direct online banking: a `brankas` payment intent, a payment method
        carrying the bank code, then an attach call whose `next_action`
        holds the bank's login redirect.
        """

        code = str(bank_code or "").strip().lower()
        if code not in BANK_TRANSFER_CODES:
            raise PaymentProviderError(f"unsupported bank code: {bank_code}")

        intent = self.create_payment_intent(
            amount_centavos=amount_centavos,
            currency=currency,
            payment_method="brankas",
            description=description,
            metadata={**metadata, "bank_code": code},
        )
        if not intent.external_reference or not intent.client_key:
            raise PaymentProviderError("paymongo payment intent has no id or client_key")

        method = self._post(
            "/payment_methods",
            {"type": "brankas", "details": {"bank_code": code}, "metadata": dict(metadata)},
        )
        attached = self._post(
            f"/payment_intents/{intent.external_reference}/attach",
            {
                "payment_method": str(method.get("id") or ""),
                "client_key": intent.client_key,
                "return_url": f"{redirect_url}?status=success&order_id={order_id}",
            },
        )
        attributes = attached.get("attributes") or {}
        status = str(attributes.get("status") or "").strip().lower()
        next_action = attributes.get("next_action") or {}
        if status == "awaiting_next_action" and next_action.get("type") == "redirect":
            checkout_url = str((next_action.get("redirect") or {}).get("url") or "").strip()
            if checkout_url:
                return CheckoutSession(
                    provider="paymongo",
                    payment_method=BANK_TRANSFER_METHOD,
                    external_reference=intent.external_reference,
                    checkout_url=checkout_url,
                    client_key=intent.client_key,
                    status=status,
                    raw=attached,
                )
        if status == "succeeded":
            return CheckoutSession(
                provider="paymongo",
                payment_method=BANK_TRANSFER_METHOD,
                external_reference=intent.external_reference,
                client_key=intent.client_key,
                status=status,
                raw=attached,
            )
        raise PaymentProviderError(f"unexpected bank transfer status: {status or 'unknown'}")

    def create_checkout(
        self,
        *,
        order_id: str,
        amount_centavos: int,
        currency: str,
        payment_method: str,
        redirect_url: str,
        description: str,
        metadata: Dict[str, Any],
        bank_code: Optional[str] = None,
    ) -> CheckoutSession:
        method = str(payment_method or "").strip().lower()
        if method in EWALLET_SOURCE_TYPES:
            return self.create_source(
                order_id=order_id,
                amount_centavos=amount_centavos,
                currency=currency,
                source_type=method,
                redirect_url=redirect_url,
                metadata=metadata,
            )
        if method in INTENT_PAYMENT_METHODS:
            return self.create_payment_intent(
                amount_centavos=amount_centavos,
                currency=currency,
                payment_method=method,
                description=description,
                metadata=metadata,
            )
        if method == BANK_TRANSFER_METHOD:
            return self.create_bank_transfer(
                order_id=order_id,
                amount_centavos=amount_centavos,
                currency=currency,
                bank_code=bank_code,
                redirect_url=redirect_url,
                description=description,
                metadata=metadata,
            )
        raise PaymentProviderError(f"unsupported payment method: {payment_method}")


def get_payment_provider(config: SettlementConfig) -> BasePaymentProvider:
    """Provider factory keyed on `config.provider_name`."""

    selected = str(config.provider_name or "paymongo").strip().lower()
    if selected == "mock":
        return MockPaymentProvider()
    return PaymongoProvider(
        secret_key=config.provider_secret_key,
        api_base_url=config.provider_api_base_url,
        timeout_seconds=config.provider_timeout_seconds,
        statement_descriptor=config.statement_descriptor,
    )

from __future__ import annotations

import base64
import json

import httpx
import pytest

from config import SettlementConfig
from settlement.provider import (
    MockPaymentProvider,
    PaymentProviderError,
    PaymongoProvider,
    get_payment_provider,
)


def _provider(handler, **kwargs) -> PaymongoProvider:
    return PaymongoProvider(
        secret_key=kwargs.pop("secret_key", "sk_test_123"),
        api_base_url="https://api.paymongo.test/v1",
        timeout_seconds=2,
        statement_descriptor="GEMINIAGRI",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def test_create_payment_posts_source_with_basic_auth() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": {"id": "pay_1", "attributes": {"status": "paid"}}})

    payment = _provider(handler).create_payment(
        source_id="src_1",
        amount_centavos=25000,
        currency="php",
        description="GeminiAgri order ORD-1",
        metadata={"order_id": "ORD-1"},
    )

    assert payment.payment_id == "pay_1"
    assert payment.is_paid is True
    assert seen["url"] == "https://api.paymongo.test/v1/payments"
    assert seen["auth"] == "Basic " + base64.b64encode(b"sk_test_123:").decode("ascii")
    attributes = seen["body"]["data"]["attributes"]
    assert attributes["amount"] == 25000
    assert attributes["currency"] == "PHP"
    assert attributes["source"] == {"id": "src_1", "type": "source"}
    assert attributes["metadata"] == {"order_id": "ORD-1"}
    assert attributes["statement_descriptor"] == "GEMINIAGRI"


def test_non_paid_status_is_returned_not_raised() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {"id": "pay_2", "attributes": {"status": "pending"}}})

    payment = _provider(handler).create_payment(
        source_id="src_2", amount_centavos=100, currency="PHP", description="x"
    )
    assert payment.status == "pending"
    assert payment.is_paid is False


def test_api_error_raises_with_provider_detail() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"errors": [{"code": "resource_failed_state", "detail": "source is not chargeable"}]})

    with pytest.raises(PaymentProviderError) as excinfo:
        _provider(handler).create_payment(source_id="src_3", amount_centavos=100, currency="PHP", description="x")
    assert excinfo.value.status_code == 400
    assert "source is not chargeable" in str(excinfo.value)


def test_timeout_raises_provider_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(PaymentProviderError, match="timed out"):
        _provider(handler).create_payment(source_id="src_4", amount_centavos=100, currency="PHP", description="x")


def test_missing_secret_key_fails_without_network() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:  # pragma: no cover
        raise AssertionError("network must not be used")

    with pytest.raises(PaymentProviderError, match="PAYMONGO_SECRET_KEY"):
        _provider(handler, secret_key="").create_payment(
            source_id="src_5", amount_centavos=100, currency="PHP", description="x"
        )


def test_ewallet_checkout_creates_source_with_redirects() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "data": {
                    "id": "src_9",
                    "attributes": {"redirect": {"checkout_url": "https://pm.link/checkout/src_9"}},
                }
            },
        )

    session = _provider(handler).create_checkout(
        order_id="CREDITS-1",
        amount_centavos=9900,
        currency="PHP",
        payment_method="GCash",
        redirect_url="https://app.example/payments",
        description="100 credits",
        metadata={"order_id": "CREDITS-1"},
    )

    assert session.checkout_url == "https://pm.link/checkout/src_9"
    assert session.external_reference == "src_9"
    assert seen["path"] == "/v1/sources"
    attributes = seen["body"]["data"]["attributes"]
    assert attributes["type"] == "gcash"
    assert attributes["redirect"]["success"] == "https://app.example/payments?status=success&order_id=CREDITS-1"
    assert attributes["redirect"]["failed"] == "https://app.example/payments?status=failed&order_id=CREDITS-1"


def test_card_checkout_creates_payment_intent() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": {"id": "pi_1", "attributes": {"client_key": "pi_1_client_abc"}}})

    session = _provider(handler).create_checkout(
        order_id="CREDITS-2",
        amount_centavos=9900,
        currency="PHP",
        payment_method="card",
        redirect_url="https://app.example/payments",
        description="100 credits",
        metadata={"order_id": "CREDITS-2"},
    )

    assert session.client_key == "pi_1_client_abc"
    assert session.checkout_url is None
    assert seen["path"] == "/v1/payment_intents"
    assert seen["body"]["data"]["attributes"]["payment_method_allowed"] == ["card"]


def test_unsupported_method_is_rejected() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:  # pragma: no cover
        raise AssertionError("network must not be used")

    with pytest.raises(PaymentProviderError, match="unsupported payment method"):
        _provider(handler).create_checkout(
            order_id="CREDITS-3",
            amount_centavos=100,
            currency="PHP",
            payment_method="cash",
            redirect_url="https://app.example",
            description="x",
            metadata={},
        )


def test_factory_selects_provider_from_config() -> None:
    assert isinstance(get_payment_provider(SettlementConfig(provider_name="mock")), MockPaymentProvider)
    provider = get_payment_provider(
        SettlementConfig(provider_name="paymongo", provider_secret_key="sk_live_x", provider_timeout_seconds=3)
    )
    assert isinstance(provider, PaymongoProvider)
    assert provider.secret_key == "sk_live_x"
    assert provider.timeout_seconds == 3.0


def test_bank_transfer_checkout_attaches_brankas_method_and_returns_redirect() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        calls.append((request.url.path, body["data"]["attributes"]))
        if request.url.path == "/v1/payment_intents":
            return httpx.Response(200, json={"data": {"id": "pi_dob", "attributes": {"client_key": "pi_dob_client"}}})
        if request.url.path == "/v1/payment_methods":
            return httpx.Response(200, json={"data": {"id": "pm_dob", "attributes": {"type": "brankas"}}})
        return httpx.Response(
            200,
            json={
                "data": {
                    "id": "pi_dob",
                    "attributes": {
                        "status": "awaiting_next_action",
                        "next_action": {"type": "redirect", "redirect": {"url": "https://bank.test/login/pi_dob"}},
                    },
                }
            },
        )

    session = _provider(handler).create_checkout(
        order_id="CREDITS-4",
        amount_centavos=50000,
        currency="PHP",
        payment_method="bank_transfer",
        redirect_url="https://app.example/payments",
        description="500 credits",
        metadata={"order_id": "CREDITS-4"},
        bank_code="BDO",
    )

    assert session.checkout_url == "https://bank.test/login/pi_dob"
    assert session.external_reference == "pi_dob"
    assert session.payment_method == "bank_transfer"
    assert session.status == "awaiting_next_action"
    assert [path for path, _ in calls] == [
        "/v1/payment_intents",
        "/v1/payment_methods",
        "/v1/payment_intents/pi_dob/attach",
    ]
    intent, method, attach = (attributes for _, attributes in calls)
    assert intent["payment_method_allowed"] == ["brankas"]
    assert intent["metadata"] == {"order_id": "CREDITS-4", "bank_code": "bdo"}
    assert method["type"] == "brankas"
    assert method["details"] == {"bank_code": "bdo"}
    assert attach == {
        "payment_method": "pm_dob",
        "client_key": "pi_dob_client",
        "return_url": "https://app.example/payments?status=success&order_id=CREDITS-4",
    }


def test_bank_transfer_rejects_unknown_bank_and_unexpected_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/attach"):
            return httpx.Response(200, json={"data": {"id": "pi_x", "attributes": {"status": "processing"}}})
        if request.url.path == "/v1/payment_methods":
            return httpx.Response(200, json={"data": {"id": "pm_x"}})
        return httpx.Response(200, json={"data": {"id": "pi_x", "attributes": {"client_key": "pi_x_client"}}})

    provider = _provider(handler)
    checkout = {
        "order_id": "CREDITS-5",
        "amount_centavos": 100,
        "currency": "PHP",
        "payment_method": "bank_transfer",
        "redirect_url": "https://app.example",
        "description": "x",
        "metadata": {},
    }
    with pytest.raises(PaymentProviderError, match="unsupported bank code"):
        provider.create_checkout(**checkout, bank_code="bpi")
    with pytest.raises(PaymentProviderError, match="unexpected bank transfer status: processing"):
        provider.create_checkout(**checkout, bank_code="landbank")

from typing import Dict

ERROR_CODE_MAP: Dict[str, Dict[str, str]] = {
    "INVALID_SIGNATURE": {
        "message": "Invalid webhook signature",
        "hint": "Re-sign the payload with the configured webhook secret; check the t= timestamp is fresh.",
    },
    "SIGNATURE_SECRET_MISSING": {
        "message": "Webhook secret is not configured",
        "hint": "Set PAYMONGO_WEBHOOK_SECRET; unsigned webhooks are refused in production.",
    },
    "UNAUTHORIZED": {
        "message": "Missing or invalid service token",
        "hint": "Send Authorization: Bearer <SETTLEMENT_SERVICE_TOKEN>.",
    },
    "INVALID_CHECKOUT_REQUEST": {
        "message": "Invalid checkout request",
        "hint": "credits and amount must be positive integers and payment_method must be supported.",
    },
    "PROVIDER_UNAVAILABLE": {
        "message": "Payment provider request failed",
        "hint": "Check PAYMONGO_SECRET_KEY, network access and the provider status page.",
    },
    "INTERNAL_SERVER_ERROR": {
        "message": "Internal server error",
        "hint": "Search the logs for the request_id in this response.",
    },
}


def explain_error(code: str | None) -> Dict[str, str] | None:
    if not code:
        return None
    return ERROR_CODE_MAP.get(code)


def error_body(code: str, **extra: object) -> Dict[str, object]:
    info = explain_error(code) or ERROR_CODE_MAP["INTERNAL_SERVER_ERROR"]
    body: Dict[str, object] = {"error": info["message"], "error_code": code, "hint": info["hint"]}
    body.update(extra)
    return body

from typing import Dict

# category drives the HTTP status returned for an expected failure.
ERROR_CODE_MAP: Dict[str, Dict[str, str]] = {
    "INVALID_AMOUNT": {
        "message": "Amount must be a positive number",
        "hint": "Send an amount greater than zero with at most two decimals.",
        "category": "validation",
    },
    "AMOUNT_LIMIT_EXCEEDED": {
        "message": "Amount exceeds the per-operation limit",
        "hint": "Split the operation; a single credit cannot exceed 999999.99 Jeez.",
        "category": "validation",
    },
    "INVALID_PLAN": {
        "message": "Unknown VIP plan",
        "hint": "Use one of MONTHLY, QUARTERLY or ANNUAL.",
        "category": "validation",
    },
    "INVALID_TOKEN": {
        "message": "Transaction token is required",
        "hint": "Generate a fresh token per logical operation and reuse it on retry.",
        "category": "validation",
    },
    "INVALID_PAYLOAD": {
        "message": "Invalid webhook payload structure",
        "hint": "event_type, resource.id and resource.status are required.",
        "category": "validation",
    },
    "UNKNOWN_PRODUCT": {
        "message": "Unknown product type",
        "hint": "custom_id must name a product from the price table.",
        "category": "validation",
    },
    "AMOUNT_MISMATCH": {
        "message": "Paid amount does not match the catalog price",
        "hint": "Possible tampering; check the webhook audit log.",
        "category": "integrity",
    },
    "CURRENCY_MISMATCH": {
        "message": "Paid currency does not match the catalog currency",
        "hint": "Possible tampering; check the webhook audit log.",
        "category": "integrity",
    },
    "BALANCE_NOT_FOUND": {
        "message": "Wallet not found",
        "hint": "The wallet is created at signup or on the first purchase.",
        "category": "not_found",
    },
    "USER_NOT_FOUND": {
        "message": "User not found",
        "hint": "Check the user id.",
        "category": "not_found",
    },
    "ORDER_NOT_FOUND": {
        "message": "Order not found",
        "hint": "The order must be created through checkout before it can be reconciled.",
        "category": "not_found",
    },
    "SUBSCRIPTION_NOT_FOUND": {
        "message": "No subscription found",
        "hint": "Activate a VIP plan first.",
        "category": "not_found",
    },
    "INSUFFICIENT_BALANCE": {
        "message": "Insufficient Jeez balance",
        "hint": "Buy more Jeez and retry.",
        "category": "conflict",
    },
    "SUBSCRIPTION_INACTIVE": {
        "message": "Subscription is not active",
        "hint": "Auto-renewal can only be changed on an active subscription.",
        "category": "conflict",
    },
    "ORDER_STATE_INVALID": {
        "message": "Order is not in a state that allows this operation",
        "hint": "Fetch the order status and retry the matching step.",
        "category": "conflict",
    },
    "EMAIL_TAKEN": {
        "message": "Email already registered",
        "hint": "Log in instead, or use another email.",
        "category": "conflict",
    },
    "INVALID_SIGNATURE": {
        "message": "Invalid webhook signature",
        "hint": "Check PAYPAL_WEBHOOK_ID and the transmission headers.",
        "category": "authentication",
    },
    "INVALID_CREDENTIALS": {
        "message": "Invalid email or password",
        "hint": "Check the credentials and retry.",
        "category": "authentication",
    },
    "PAYPAL_UNAVAILABLE": {
        "message": "Payment provider unavailable",
        "hint": "Retry later; no charge was made.",
        "category": "transient",
    },
    "PAYPAL_REJECTED": {
        "message": "Payment provider rejected the request",
        "hint": "Check the provider response detail.",
        "category": "provider",
    },
    "DB_ERROR": {
        "message": "Database error",
        "hint": "Retry the request with the same transaction token.",
        "category": "transient",
    },
    "UNEXPECTED_ERROR": {
        "message": "Unexpected error",
        "hint": "Check the logs for the trace id.",
        "category": "internal",
    },
}

_CATEGORY_STATUS: Dict[str, int] = {
    "validation": 400,
    "integrity": 400,
    "not_found": 404,
    "conflict": 409,
    "authentication": 401,
    "transient": 503,
    "provider": 502,
    "internal": 500,
}


def explain_error(code: str | None) -> Dict[str, str] | None:
    if not code:
        return None
    return ERROR_CODE_MAP.get(code)


def http_status_for(code: str | None) -> int:
    info = explain_error(code)
    if info is None:
        return 500
    return _CATEGORY_STATUS.get(info.get("category", ""), 500)

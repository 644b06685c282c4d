from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from observability import get_logger, log_event

from .pricing import ProductPrice

_LOGGER = get_logger("jeezy.monetization.paypal")

# Refresh the OAuth token this many seconds before PayPal expires it.
_TOKEN_REFRESH_MARGIN_SECONDS = 60.0


class PayPalError(RuntimeError):
    pass


class PayPalConfigError(PayPalError):
    pass


class PayPalTransientError(PayPalError):
    """Timeout, network failure, 429 or 5xx: the call may be retried."""


class PayPalRejectedError(PayPalError):
    """PayPal answered and refused the request."""

    def __init__(self, message: str, *, status_code: int, body: str = "") -> None:
        super().__init__(message)
        self.status_code = int(status_code)
        self.body = body


@dataclass(frozen=True)
class PayPalOrderResult:
    order_id: str
    status: str
    approve_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PayPalCaptureResult:
    order_id: str
    status: str
    capture_id: Optional[str] = None
    payer_email: Optional[str] = None
    payer_name: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PayPalSubscriptionResult:
    subscription_id: str
    status: str
    approve_url: Optional[str] = None


def _find_link(data: Dict[str, Any], *rels: str) -> Optional[str]:
    links = data.get("links")
    if not isinstance(links, list):
        return None
    for rel in rels:
        for link in links:
            if isinstance(link, dict) and str(link.get("rel") or "").lower() == rel:
                href = str(link.get("href") or "").strip()
                if href:
                    return href
    return None


class PayPalClient:
    """
    Minimal PayPal REST client.

    Every call is bounded by `timeout_seconds`. Transport failures surface as
    `PayPalTransientError`; explicit refusals as `PayPalRejectedError`.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        base_url: str,
        timeout_seconds: float = 15.0,
        brand_name: str = "Jeezy TV",
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.client_id = str(client_id or "").strip()
        self.client_secret = str(client_secret or "").strip()
        self.base_url = str(base_url or "").strip().rstrip("/")
        self.brand_name = brand_name
        self._client = http_client or httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(float(timeout_seconds)),
            trust_env=False,
        )
        self._token_lock = threading.Lock()
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.base_url)

    def close(self) -> None:
        self._client.close()

    def _send(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            resp = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            log_event(_LOGGER, logging.WARNING, "paypal.request.timeout", method=method, path=path)
            raise PayPalTransientError(f"paypal timeout: {method} {path}") from exc
        except httpx.TransportError as exc:
            log_event(_LOGGER, logging.WARNING, "paypal.request.transport_error", method=method, path=path, error=str(exc))
            raise PayPalTransientError(f"paypal unreachable: {method} {path}") from exc

        duration_ms = int((time.perf_counter() - started) * 1000)
        log_event(
            _LOGGER,
            logging.INFO,
            "paypal.request.completed",
            method=method,
            path=path,
            status_code=resp.status_code,
            duration_ms=duration_ms,
        )
        if resp.status_code == 429 or resp.status_code >= 500:
            raise PayPalTransientError(f"paypal unavailable: status={resp.status_code}")
        if resp.status_code >= 400:
            body = (resp.text or "")[:500]
            raise PayPalRejectedError(
                f"paypal rejected {method} {path}: status={resp.status_code}",
                status_code=resp.status_code,
                body=body,
            )
        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError as exc:
            raise PayPalRejectedError("paypal returned invalid JSON", status_code=resp.status_code) from exc
        return data if isinstance(data, dict) else {}

    def get_access_token(self) -> str:
        if not self.configured:
            raise PayPalConfigError("PayPal credentials not configured")
        with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token
            data = self._send(
                "POST",
                "/v1/oauth2/token",
                auth=(self.client_id, self.client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
            )
            token = str(data.get("access_token") or "").strip()
            if not token:
                raise PayPalRejectedError("paypal token response missing access_token", status_code=200)
            expires_in = float(data.get("expires_in") or 0)
            self._access_token = token
            self._token_expires_at = time.monotonic() + max(0.0, expires_in - _TOKEN_REFRESH_MARGIN_SECONDS)
            return token

    def _authorized(self, method: str, path: str, *, request_id: Optional[str] = None, **kwargs: Any) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.get_access_token()}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return self._send(method, path, headers=headers, **kwargs)

    def create_order(
        self,
        *,
        reference_id: str,
        product: ProductPrice,
        return_url: str,
        cancel_url: str,
    ) -> PayPalOrderResult:
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": reference_id,
                    "custom_id": product.product_id,
                    "description": product.label,
                    "amount": {"currency_code": product.currency, "value": format(product.amount, "f")},
                }
            ],
            "application_context": {
                "brand_name": self.brand_name,
                "user_action": "PAY_NOW",
                "return_url": return_url,
                "cancel_url": cancel_url,
            },
        }
        data = self._authorized("POST", "/v2/checkout/orders", request_id=reference_id, json=payload)
        order_id = str(data.get("id") or "").strip()
        if not order_id:
            raise PayPalRejectedError("paypal order response missing id", status_code=200, body=str(data)[:500])
        return PayPalOrderResult(
            order_id=order_id,
            status=str(data.get("status") or "CREATED"),
            approve_url=_find_link(data, "approve", "payer-action"),
            raw=data,
        )

    def capture_order(self, order_id: str, *, request_id: Optional[str] = None) -> PayPalCaptureResult:
        key = str(order_id or "").strip()
        data = self._authorized("POST", f"/v2/checkout/orders/{key}/capture", request_id=request_id, json={})
        capture_id: Optional[str] = None
        units = data.get("purchase_units")
        if isinstance(units, list) and units:
            captures = ((units[0] or {}).get("payments") or {}).get("captures") or []
            if captures and isinstance(captures[0], dict):
                capture_id = str(captures[0].get("id") or "").strip() or None
        payer = data.get("payer") if isinstance(data.get("payer"), dict) else {}
        name = payer.get("name") if isinstance(payer.get("name"), dict) else {}
        payer_name = " ".join(
            part for part in (str(name.get("given_name") or "").strip(), str(name.get("surname") or "").strip()) if part
        )
        return PayPalCaptureResult(
            order_id=str(data.get("id") or key),
            status=str(data.get("status") or ""),
            capture_id=capture_id,
            payer_email=str(payer.get("email_address") or "").strip() or None,
            payer_name=payer_name or None,
            raw=data,
        )

    def create_product(self, *, name: str, description: str = "", product_type: str = "SERVICE") -> str:
        data = self._authorized(
            "POST",
            "/v1/catalogs/products",
            json={"name": name, "description": description, "type": product_type, "category": "SOFTWARE"},
        )
        return str(data.get("id") or "")

    def create_plan(
        self,
        *,
        product_id: str,
        name: str,
        description: str,
        price: Decimal,
        currency: str = "USD",
        interval_unit: str = "MONTH",
        interval_count: int = 1,
    ) -> str:
        payload = {
            "product_id": product_id,
            "name": name,
            "description": description,
            "billing_cycles": [
                {
                    "frequency": {"interval_unit": interval_unit, "interval_count": int(interval_count)},
                    "tenure_type": "REGULAR",
                    "sequence": 1,
                    "total_cycles": 0,
                    "pricing_scheme": {
                        "fixed_price": {"value": format(Decimal(price), "f"), "currency_code": currency},
                    },
                }
            ],
            "payment_preferences": {
                "auto_bill_amount": "YES",
                "setup_fee_failure_action": "CONTINUE",
                "payment_failure_threshold": 3,
            },
        }
        data = self._authorized("POST", "/v1/billing/plans", json=payload)
        return str(data.get("id") or "")

    def create_subscription(
        self,
        *,
        plan_id: str,
        subscriber_email: str,
        subscriber_name: str,
        return_url: str,
        cancel_url: str,
        custom_id: Optional[str] = None,
    ) -> PayPalSubscriptionResult:
        payload: Dict[str, Any] = {
            "plan_id": plan_id,
            "subscriber": {
                "email_address": subscriber_email,
                "name": {"given_name": subscriber_name},
            },
            "application_context": {
                "brand_name": self.brand_name,
                "user_action": "SUBSCRIBE_NOW",
                "return_url": return_url,
                "cancel_url": cancel_url,
            },
        }
        if custom_id:
            payload["custom_id"] = custom_id
        data = self._authorized("POST", "/v1/billing/subscriptions", json=payload)
        return PayPalSubscriptionResult(
            subscription_id=str(data.get("id") or ""),
            status=str(data.get("status") or ""),
            approve_url=_find_link(data, "approve"),
        )

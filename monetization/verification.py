from __future__ import annotations

import base64
import hashlib
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Final, Mapping, Optional
from urllib.parse import urlparse

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from observability import get_logger, log_event

from . import results
from .pricing import ProductInfo, classify_product
from .results import ServiceResult

_LOGGER = get_logger("jeezy.monetization.verification")

HEADER_TRANSMISSION_ID: Final[str] = "PAYPAL-TRANSMISSION-ID"
HEADER_TRANSMISSION_TIME: Final[str] = "PAYPAL-TRANSMISSION-TIME"
HEADER_TRANSMISSION_SIG: Final[str] = "PAYPAL-TRANSMISSION-SIG"
HEADER_CERT_URL: Final[str] = "PAYPAL-CERT-URL"
HEADER_AUTH_ALGO: Final[str] = "PAYPAL-AUTH-ALGO"

REQUIRED_HEADERS: Final[tuple[str, ...]] = (
    HEADER_TRANSMISSION_ID,
    HEADER_TRANSMISSION_TIME,
    HEADER_TRANSMISSION_SIG,
    HEADER_CERT_URL,
    HEADER_AUTH_ALGO,
)

AMOUNT_TOLERANCE: Final[Decimal] = Decimal("0.01")

_HASHES_BY_ALGO: Final[dict[str, Callable[[], hashes.HashAlgorithm]]] = {
    "SHA256WITHRSA": hashes.SHA256,
    "SHA512WITHRSA": hashes.SHA512,
}

CertFetcher = Callable[[str], str]


class PaymentVerificationError(RuntimeError):
    pass


def _normalize_pem(value: str) -> str:
    pem = str(value or "").strip()
    if not pem:
        return ""
    # Allow storing PEM in env vars with literal "\n" separators.
    if "\\n" in pem and "BEGIN" in pem:
        pem = pem.replace("\\n", "\n")
    return pem


def normalize_headers(headers: Mapping[str, Any]) -> dict[str, str]:
    return {str(key).strip().upper(): str(value or "").strip() for key, value in dict(headers or {}).items()}


def is_trusted_cert_url(cert_url: str) -> bool:
    parsed = urlparse(str(cert_url or "").strip())
    if parsed.scheme != "https":
        return False
    host = (parsed.hostname or "").lower()
    return host == "paypal.com" or host.endswith(".paypal.com")


def build_signed_message(*, transmission_id: str, transmission_time: str, webhook_id: str, raw_body: bytes) -> bytes:
    body_digest = base64.b64encode(hashlib.sha256(raw_body).digest()).decode("ascii")
    return f"{transmission_id}|{transmission_time}|{webhook_id}|{body_digest}".encode("utf-8")


def verify_rsa_signature_with_cert(*, cert_pem: str, message: bytes, signature_b64: str, auth_algo: str) -> bool:
    hash_factory = _HASHES_BY_ALGO.get(str(auth_algo or "").strip().upper())
    if hash_factory is None:
        return False
    pem = _normalize_pem(cert_pem)
    if not pem:
        return False
    try:
        cert = x509.load_pem_x509_certificate(pem.encode("utf-8"))
        public_key = cert.public_key()
        if not isinstance(public_key, rsa.RSAPublicKey):
            return False
        signature = base64.b64decode(signature_b64.encode("ascii"), validate=True)
        public_key.verify(signature, message, padding.PKCS1v15(), hash_factory())
    except Exception:  # noqa: BLE001
        return False
    return True


def fetch_cert_pem(cert_url: str, *, timeout: float = 10.0) -> str:
    resp = httpx.get(cert_url, timeout=timeout, trust_env=False, follow_redirects=False)
    resp.raise_for_status()
    return resp.text


@dataclass(frozen=True)
class ParsedWebhook:
    event_type: str
    order_id: str
    status: str
    event_id: Optional[str] = None
    amount: Optional[str] = None
    currency: Optional[str] = None
    custom_id: Optional[str] = None
    payer_email: Optional[str] = None
    payer_name: Optional[str] = None


def _first_purchase_unit(resource: Mapping[str, Any]) -> Mapping[str, Any]:
    units = resource.get("purchase_units")
    if isinstance(units, list) and units and isinstance(units[0], Mapping):
        return units[0]
    return {}


class PaymentVerificationService:
    """
    Gatekeeper for inbound PayPal notifications.

    Signature checks fail closed: a missing header, an untrusted or
    unreachable certificate, or an unknown algorithm all reject.
    """

    def __init__(
        self,
        webhook_id: str,
        *,
        cert_fetcher: Optional[CertFetcher] = None,
        cert_timeout_seconds: float = 10.0,
    ) -> None:
        self.webhook_id = str(webhook_id or "").strip()
        self._cert_timeout_seconds = float(cert_timeout_seconds)
        self._cert_fetcher = cert_fetcher or self._default_fetcher
        self._cert_cache: dict[str, str] = {}
        self._cert_lock = threading.Lock()

    def _default_fetcher(self, cert_url: str) -> str:
        return fetch_cert_pem(cert_url, timeout=self._cert_timeout_seconds)

    def _load_cert(self, cert_url: str) -> str:
        with self._cert_lock:
            cached = self._cert_cache.get(cert_url)
        if cached:
            return cached
        pem = _normalize_pem(self._cert_fetcher(cert_url))
        if pem:
            with self._cert_lock:
                self._cert_cache[cert_url] = pem
        return pem

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, Any]) -> ServiceResult[bool]:
        normalized = normalize_headers(headers)
        missing = [name for name in REQUIRED_HEADERS if not normalized.get(name)]
        if missing:
            return ServiceResult.fail(results.INVALID_SIGNATURE, f"Missing headers: {', '.join(missing)}")
        if not self.webhook_id:
            return ServiceResult.fail(results.INVALID_SIGNATURE, "Webhook id is not configured")

        cert_url = normalized[HEADER_CERT_URL]
        if not is_trusted_cert_url(cert_url):
            log_event(_LOGGER, logging.WARNING, "webhook.signature.untrusted_cert_url", cert_url=cert_url)
            return ServiceResult.fail(results.INVALID_SIGNATURE, "Untrusted certificate url")
        try:
            cert_pem = self._load_cert(cert_url)
        except (httpx.HTTPError, PaymentVerificationError) as exc:
            log_event(
                _LOGGER,
                logging.WARNING,
                "webhook.signature.cert_fetch_failed",
                cert_url=cert_url,
                error=str(exc),
            )
            return ServiceResult.fail(results.INVALID_SIGNATURE, "Certificate unavailable")

        message = build_signed_message(
            transmission_id=normalized[HEADER_TRANSMISSION_ID],
            transmission_time=normalized[HEADER_TRANSMISSION_TIME],
            webhook_id=self.webhook_id,
            raw_body=bytes(raw_body or b""),
        )
        if not verify_rsa_signature_with_cert(
            cert_pem=cert_pem,
            message=message,
            signature_b64=normalized[HEADER_TRANSMISSION_SIG],
            auth_algo=normalized[HEADER_AUTH_ALGO],
        ):
            return ServiceResult.fail(results.INVALID_SIGNATURE, "Signature verification failed")
        return ServiceResult.ok(True)

    @staticmethod
    def validate_amount(
        expected: Decimal,
        actual: Any,
        expected_currency: str,
        actual_currency: Optional[str],
    ) -> ServiceResult[bool]:
        try:
            actual_value = Decimal(str(actual).strip())
        except (InvalidOperation, ValueError):
            return ServiceResult.fail(results.AMOUNT_MISMATCH, f"Unparseable amount: {actual!r}")
        if not actual_value.is_finite() or abs(Decimal(expected) - actual_value) > AMOUNT_TOLERANCE:
            return ServiceResult.fail(
                results.AMOUNT_MISMATCH,
                f"Amount mismatch: expected {expected}, got {actual_value}",
            )
        if str(expected_currency or "").strip().upper() != str(actual_currency or "").strip().upper():
            return ServiceResult.fail(
                results.CURRENCY_MISMATCH,
                f"Currency mismatch: expected {expected_currency}, got {actual_currency}",
            )
        return ServiceResult.ok(True)

    @staticmethod
    def parse_webhook(payload: Any) -> ServiceResult[ParsedWebhook]:
        if not isinstance(payload, Mapping):
            return ServiceResult.fail(results.INVALID_PAYLOAD, "Invalid webhook payload structure")
        event_type = str(payload.get("event_type") or "").strip()
        resource = payload.get("resource")
        if not event_type or not isinstance(resource, Mapping):
            return ServiceResult.fail(results.INVALID_PAYLOAD, "Invalid webhook payload structure")
        order_id = str(resource.get("id") or "").strip()
        status = str(resource.get("status") or "").strip()
        if not order_id or not status:
            return ServiceResult.fail(results.INVALID_PAYLOAD, "Invalid webhook payload structure")

        unit = _first_purchase_unit(resource)
        amount_block = resource.get("amount") if isinstance(resource.get("amount"), Mapping) else unit.get("amount")
        amount_block = amount_block if isinstance(amount_block, Mapping) else {}
        custom_id = resource.get("custom_id") or unit.get("custom_id")
        payer = resource.get("payer") if isinstance(resource.get("payer"), Mapping) else {}
        payer_name_block = payer.get("name") if isinstance(payer.get("name"), Mapping) else {}
        payer_name = " ".join(
            part
            for part in (
                str(payer_name_block.get("given_name") or "").strip(),
                str(payer_name_block.get("surname") or "").strip(),
            )
            if part
        )
        return ServiceResult.ok(
            ParsedWebhook(
                event_type=event_type,
                order_id=order_id,
                status=status,
                event_id=str(payload.get("id") or "").strip() or None,
                amount=str(amount_block.get("value")).strip() if amount_block.get("value") is not None else None,
                currency=str(amount_block.get("currency_code") or "").strip() or None,
                custom_id=str(custom_id).strip() if custom_id else None,
                payer_email=str(payer.get("email_address") or "").strip() or None,
                payer_name=payer_name or None,
            )
        )

    @staticmethod
    def classify_product(custom_id: Optional[str]) -> ProductInfo:
        return classify_product(custom_id)

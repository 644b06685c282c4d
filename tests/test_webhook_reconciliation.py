"""Reconciliation tests for PayPal webhook deliveries.

Each test drives `WebhookReconciler.handle` with a signed body and checks
that a delivery applies at most once, and that anything suspicious leaves
balances, subscriptions and orders untouched.
"""

from __future__ import annotations

import base64
import json
from decimal import Decimal
from pathlib import Path

import pytest

import monetization.webhook as webhook_module
from monetization import (
    DEFAULT_PRICE_TABLE,
    Database,
    JeezWalletService,
    OrderStatus,
    PaymentVerificationService,
    PayPalOrderRepository,
    PlanType,
    ServiceResult,
    TransactionLedger,
    User,
    UserRole,
    VIPSubscriptionService,
    WebhookReconciler,
)
from monetization.verification import build_signed_message

WEBHOOK_ID = "WH-RECONCILE"
CERT_URL = "https://api.sandbox.paypal.com/v1/notifications/certs/CERT-test"


def _make_signing_material():
    from datetime import datetime, timedelta, timezone

    from cryptography import x509
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.hazmat.primitives.asymmetric import rsa
    from cryptography.x509.oid import NameOID

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "paypal-webhook-test")])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=1))
        .sign(private_key, hashes.SHA256())
    )
    return private_key, cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


_PRIVATE_KEY, _CERT_PEM = _make_signing_material()


class _RecordingSender:
    def __init__(self, *, fail: bool = False) -> None:
        self.sent: list[dict] = []
        self.fail = fail

    def send(self, *, to: str, subject: str, html_body: str) -> bool:
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append({"to": to, "subject": subject, "html": html_body})
        return True


def _signed_headers(body: bytes) -> dict:
    from cryptography.hazmat.primitives import hashes
    from cryptography.hazmat.primitives.asymmetric import padding

    transmission_id = "tx-0001"
    transmission_time = "2026-10-18T10:00:00Z"
    message = build_signed_message(
        transmission_id=transmission_id,
        transmission_time=transmission_time,
        webhook_id=WEBHOOK_ID,
        raw_body=body,
    )
    signature = _PRIVATE_KEY.sign(message, padding.PKCS1v15(), hashes.SHA256())
    return {
        "PAYPAL-TRANSMISSION-ID": transmission_id,
        "PAYPAL-TRANSMISSION-TIME": transmission_time,
        "PAYPAL-TRANSMISSION-SIG": base64.b64encode(signature).decode("ascii"),
        "PAYPAL-CERT-URL": CERT_URL,
        "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    }


def _payload(
    order_id: str,
    *,
    custom_id: str = "jeez_100_usd",
    value: str = "4.99",
    currency: str = "USD",
    event_type: str = "CHECKOUT.ORDER.COMPLETED",
) -> dict:
    return {
        "id": f"WH-EVT-{order_id}",
        "event_type": event_type,
        "resource": {
            "id": order_id,
            "status": "COMPLETED",
            "payer": {"email_address": "payer@example.com", "name": {"given_name": "Pat", "surname": "Payer"}},
            "purchase_units": [{"custom_id": custom_id, "amount": {"value": value, "currency_code": currency}}],
        },
    }


def _body(payload: dict) -> bytes:
    return json.dumps(payload).encode("utf-8")


def _make_env(tmp_path: Path, *, sender=None):
    database = Database(f"sqlite+pysqlite:///{tmp_path / 'webhook.db'}").open()
    database.create_schema()
    verifier = PaymentVerificationService(WEBHOOK_ID, cert_fetcher=lambda _url: _CERT_PEM)
    reconciler = WebhookReconciler(database, verifier, DEFAULT_PRICE_TABLE, email_sender=sender)
    return database, reconciler


def _seed_user(database: Database, user_id: str) -> None:
    with database.session() as session:
        session.add(User(id=user_id, email=f"{user_id}@example.com", name=user_id.title()))
        JeezWalletService(session).create_wallet(user_id)


def _seed_order(database: Database, user_id: str, product_id: str, provider_order_id: str) -> None:
    price = DEFAULT_PRICE_TABLE.get(product_id)
    with database.session() as session:
        repo = PayPalOrderRepository(session)
        order = repo.create_pending(user_id=user_id, product_id=product_id, amount=price.amount, currency=price.currency)
        repo.attach_provider_order(order.id, order_id=provider_order_id, approve_url=None)


def _balance(database: Database, user_id: str) -> Decimal:
    with database.session() as session:
        return JeezWalletService(session).get_balance(user_id).data.balance


def _order_state(database: Database, provider_order_id: str):
    with database.session() as session:
        order = PayPalOrderRepository(session).get_by_provider_id(provider_order_id)
        return order.status, order.webhook_verified


def _deliver(reconciler: WebhookReconciler, payload: dict):
    body = _body(payload)
    return reconciler.handle(body, _signed_headers(body))


def test_jeez_purchase_credits_wallet_once(tmp_path: Path) -> None:
    sender = _RecordingSender()
    database, reconciler = _make_env(tmp_path, sender=sender)
    _seed_user(database, "alice")
    _seed_order(database, "alice", "jeez_100_usd", "ORDER-A")

    outcome = _deliver(reconciler, _payload("ORDER-A"))
    assert outcome.http_status == 200
    assert outcome.body == {"status": "processed", "order_id": "ORDER-A", "product_type": "JEEZ", "user_id": "alice"}
    assert _balance(database, "alice") == Decimal("100.00")
    assert _order_state(database, "ORDER-A") == (OrderStatus.COMPLETED, True)

    assert len(sender.sent) == 1
    assert sender.sent[0]["to"] == "alice@example.com"
    assert "100 Jeez" in sender.sent[0]["subject"]

    with database.session() as session:
        repo = PayPalOrderRepository(session)
        order = repo.get_by_provider_id("ORDER-A")
        assert order.payer_email == "payer@example.com"
        assert json.loads(order.raw_webhook_data)["resource"]["id"] == "ORDER-A"
        assert repo.count_audit_logs(outcome="processed") == 1

    database.close()


def test_duplicate_delivery_is_acknowledged_without_second_credit(tmp_path: Path) -> None:
    database, reconciler = _make_env(tmp_path)
    _seed_user(database, "bob")
    _seed_order(database, "bob", "jeez_500_usd", "ORDER-B")
    payload = _payload("ORDER-B", custom_id="jeez_500_usd", value="19.99")

    assert _deliver(reconciler, payload).http_status == 200
    duplicate = _deliver(reconciler, payload)
    assert duplicate.http_status == 200
    assert duplicate.body == {"status": "duplicate", "order_id": "ORDER-B"}
    assert duplicate.outcome == "duplicate"
    assert _balance(database, "bob") == Decimal("500.00")

    with database.session() as session:
        repo = PayPalOrderRepository(session)
        assert repo.count_audit_logs(outcome="processed") == 1
        assert repo.count_audit_logs(outcome="duplicate") == 1

    database.close()


def test_amount_mismatch_is_rejected_as_fraud(tmp_path: Path) -> None:
    database, reconciler = _make_env(tmp_path)
    _seed_user(database, "carol")
    _seed_order(database, "carol", "jeez_1000_usd", "ORDER-C")

    outcome = _deliver(reconciler, _payload("ORDER-C", custom_id="jeez_1000_usd", value="0.01"))
    assert outcome.http_status == 400
    assert outcome.code == "AMOUNT_MISMATCH"
    assert outcome.outcome == "rejected_price"
    assert _balance(database, "carol") == Decimal("0.00")
    assert _order_state(database, "ORDER-C") == (OrderStatus.PENDING, False)

    currency = _deliver(reconciler, _payload("ORDER-C", custom_id="jeez_1000_usd", value="34.99", currency="EUR"))
    assert currency.http_status == 400
    assert currency.code == "CURRENCY_MISMATCH"

    database.close()


def test_underpaid_jeez_order_writes_nothing(tmp_path: Path) -> None:
    database, reconciler = _make_env(tmp_path)
    _seed_user(database, "erin")
    _seed_order(database, "erin", "jeez_100_usd", "ORDER-E")

    outcome = _deliver(reconciler, _payload("ORDER-E", value="4.50"))
    assert outcome.http_status == 400
    assert outcome.code == "AMOUNT_MISMATCH"
    assert _balance(database, "erin") == Decimal("0.00")
    assert _order_state(database, "ORDER-E") == (OrderStatus.PENDING, False)
    with database.session() as session:
        assert TransactionLedger(session).count_for_user("erin") == 0
        assert PayPalOrderRepository(session).count_audit_logs(outcome="rejected_price") == 1

    # One cent off stays within tolerance.
    accepted = _deliver(reconciler, _payload("ORDER-E", value="4.98"))
    assert accepted.http_status == 200
    assert _balance(database, "erin") == Decimal("100.00")
    with database.session() as session:
        assert TransactionLedger(session).count_for_user("erin") == 1

    database.close()


def test_vip_purchase_activates_subscription(tmp_path: Path) -> None:
    database, reconciler = _make_env(tmp_path)
    _seed_user(database, "dave")
    _seed_order(database, "dave", "vip_monthly_usd", "ORDER-D")

    outcome = _deliver(reconciler, _payload("ORDER-D", custom_id="vip_monthly_usd", value="9.99"))
    assert outcome.http_status == 200
    assert outcome.body["product_type"] == "VIP"

    with database.session() as session:
        status = VIPSubscriptionService(session).get_status("dave").data
        role = session.get(User, "dave").role
    assert status.is_active is True
    assert status.plan_type == PlanType.MONTHLY
    assert role == UserRole.VIP
    assert _balance(database, "dave") == Decimal("0.00")

    database.close()


def test_invalid_signature_is_rejected_before_parsing(tmp_path: Path) -> None:
    database, reconciler = _make_env(tmp_path)
    _seed_user(database, "erin")
    _seed_order(database, "erin", "jeez_100_usd", "ORDER-E")

    body = _body(_payload("ORDER-E"))
    headers = _signed_headers(body)
    headers["PAYPAL-TRANSMISSION-SIG"] = base64.b64encode(b"forged").decode("ascii")
    outcome = reconciler.handle(body, headers)

    assert outcome.http_status == 401
    assert outcome.body["code"] == "INVALID_SIGNATURE"
    assert _balance(database, "erin") == Decimal("0.00")

    with database.session() as session:
        logs = PayPalOrderRepository(session).list_audit_logs()
    assert len(logs) == 1
    assert logs[0].outcome == "rejected_signature"
    assert logs[0].signature_valid is False
    assert logs[0].http_status == 401

    database.close()


def test_malformed_json_is_rejected(tmp_path: Path) -> None:
    database, reconciler = _make_env(tmp_path)
    body = b"{not json"
    outcome = reconciler.handle(body, _signed_headers(body))
    assert outcome.http_status == 400
    assert outcome.code == "INVALID_PAYLOAD"

    missing_resource = _body({"event_type": "CHECKOUT.ORDER.COMPLETED"})
    outcome = reconciler.handle(missing_resource, _signed_headers(missing_resource))
    assert outcome.http_status == 400
    assert outcome.code == "INVALID_PAYLOAD"
    database.close()


def test_non_actionable_events_are_ignored(tmp_path: Path) -> None:
    database, reconciler = _make_env(tmp_path)
    _seed_user(database, "fay")
    _seed_order(database, "fay", "jeez_100_usd", "ORDER-F")

    outcome = _deliver(reconciler, _payload("ORDER-F", event_type="CHECKOUT.ORDER.APPROVED"))
    assert outcome.http_status == 200
    assert outcome.body == {"status": "ignored"}
    assert _order_state(database, "ORDER-F") == (OrderStatus.PENDING, False)
    database.close()


def test_unknown_product_is_rejected(tmp_path: Path) -> None:
    database, reconciler = _make_env(tmp_path)
    outcome = _deliver(reconciler, _payload("ORDER-G", custom_id="gold_100_usd"))
    assert outcome.http_status == 400
    assert outcome.code == "UNKNOWN_PRODUCT"

    unpriced = _deliver(reconciler, _payload("ORDER-G", custom_id="jeez_42_usd", value="1.00"))
    assert unpriced.http_status == 400
    assert unpriced.code == "AMOUNT_MISMATCH"
    database.close()


def test_unknown_order_is_not_found(tmp_path: Path) -> None:
    database, reconciler = _make_env(tmp_path)
    outcome = _deliver(reconciler, _payload("ORDER-MISSING"))
    assert outcome.http_status == 404
    assert outcome.code == "ORDER_NOT_FOUND"
    database.close()


def test_product_swapped_against_order_is_rejected(tmp_path: Path) -> None:
    database, reconciler = _make_env(tmp_path)
    _seed_user(database, "gus")
    _seed_order(database, "gus", "jeez_100_usd", "ORDER-H")

    # Correctly priced for the claimed product, but not what was ordered.
    outcome = _deliver(reconciler, _payload("ORDER-H", custom_id="jeez_1000_usd", value="34.99"))
    assert outcome.http_status == 400
    assert outcome.code == "AMOUNT_MISMATCH"
    assert _balance(database, "gus") == Decimal("0.00")
    assert _order_state(database, "ORDER-H") == (OrderStatus.PENDING, False)
    database.close()


def test_apply_failure_rolls_back_order_completion(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    database, reconciler = _make_env(tmp_path)
    _seed_user(database, "hana")
    _seed_order(database, "hana", "jeez_100_usd", "ORDER-I")

    def _failing_credit(self, *_args, **_kwargs):
        return ServiceResult.fail("DB_ERROR", "simulated failure")

    monkeypatch.setattr(webhook_module.JeezWalletService, "credit", _failing_credit)
    failed = _deliver(reconciler, _payload("ORDER-I"))
    assert failed.http_status == 500
    assert failed.outcome == "apply_failed"
    assert _order_state(database, "ORDER-I") == (OrderStatus.PENDING, False)

    monkeypatch.undo()
    retried = _deliver(reconciler, _payload("ORDER-I"))
    assert retried.http_status == 200
    assert retried.body["status"] == "processed"
    assert _balance(database, "hana") == Decimal("100.00")
    database.close()


def test_receipt_failure_does_not_affect_processing(tmp_path: Path) -> None:
    database, reconciler = _make_env(tmp_path, sender=_RecordingSender(fail=True))
    _seed_user(database, "ivan")
    _seed_order(database, "ivan", "jeez_100_usd", "ORDER-J")

    outcome = _deliver(reconciler, _payload("ORDER-J"))
    assert outcome.http_status == 200
    assert _balance(database, "ivan") == Decimal("100.00")
    database.close()

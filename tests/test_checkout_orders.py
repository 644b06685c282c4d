from __future__ import annotations

from pathlib import Path

import httpx

from monetization import (
    DEFAULT_PRICE_TABLE,
    CheckoutService,
    Database,
    OrderStatus,
    PayPalClient,
    PayPalOrderRepository,
    User,
)

BASE_URL = "https://api-m.sandbox.paypal.com"


def _make_env(tmp_path: Path, handler):
    database = Database(f"sqlite+pysqlite:///{tmp_path / 'checkout.db'}").open()
    database.create_schema()
    with database.session() as session:
        session.add(User(id="buyer", email="buyer@example.com"))
        session.add(User(id="stranger", email="stranger@example.com"))
    paypal = PayPalClient(
        client_id="client-id",
        client_secret="client-secret",
        base_url=BASE_URL,
        http_client=httpx.Client(base_url=BASE_URL, transport=httpx.MockTransport(handler)),
    )
    checkout = CheckoutService(
        database,
        paypal,
        DEFAULT_PRICE_TABLE,
        return_url="https://jeezy.test/ok",
        cancel_url="https://jeezy.test/cancel",
    )
    return database, paypal, checkout


def _paypal_handler(*, create_status: int = 201, capture_status: int = 201):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        if request.url.path == "/v2/checkout/orders":
            if create_status >= 400:
                return httpx.Response(create_status, json={"name": "ERROR"})
            return httpx.Response(
                create_status,
                json={
                    "id": "PAYPAL-ORDER-1",
                    "status": "CREATED",
                    "links": [{"href": "https://www.sandbox.paypal.com/checkoutnow?token=1", "rel": "approve"}],
                },
            )
        if request.url.path.endswith("/capture"):
            if capture_status >= 400:
                return httpx.Response(capture_status, json={"name": "ERROR"})
            return httpx.Response(
                capture_status,
                json={
                    "id": "PAYPAL-ORDER-1",
                    "status": "COMPLETED",
                    "payer": {"email_address": "payer@example.com"},
                    "purchase_units": [{"payments": {"captures": [{"id": "CAP-1"}]}}],
                },
            )
        return httpx.Response(404)

    return handler


def test_create_order_persists_row_and_attaches_provider_id(tmp_path: Path) -> None:
    database, paypal, checkout = _make_env(tmp_path, _paypal_handler())

    result = checkout.create_order("buyer", "VIP_MONTHLY_USD")
    assert result.success is True
    view = result.data
    assert view.order_id == "PAYPAL-ORDER-1"
    assert view.status == OrderStatus.PENDING
    assert str(view.amount) == "9.99"
    assert view.approve_url == "https://www.sandbox.paypal.com/checkoutnow?token=1"

    by_local = checkout.get_order("buyer", view.id)
    by_provider = checkout.get_order("buyer", "PAYPAL-ORDER-1")
    assert by_local.data.id == by_provider.data.id == view.id
    assert checkout.get_order("stranger", view.id).code == "ORDER_NOT_FOUND"

    paypal.close()
    database.close()


def test_create_order_validates_product_and_user(tmp_path: Path) -> None:
    database, paypal, checkout = _make_env(tmp_path, _paypal_handler())

    assert checkout.create_order("buyer", "jeez_42_usd").code == "UNKNOWN_PRODUCT"
    assert checkout.create_order("nobody", "jeez_100_usd").code == "USER_NOT_FOUND"

    with database.session() as session:
        assert PayPalOrderRepository(session).list_for_user("buyer") == []

    paypal.close()
    database.close()


def test_provider_outage_keeps_order_retryable(tmp_path: Path) -> None:
    database, paypal, checkout = _make_env(tmp_path, _paypal_handler(create_status=503))

    result = checkout.create_order("buyer", "jeez_100_usd")
    assert result.success is False
    assert result.code == "PAYPAL_UNAVAILABLE"

    with database.session() as session:
        order = PayPalOrderRepository(session).get(result.extra["order_ref"])
        assert order.status == OrderStatus.CREATED
        assert order.order_id is None
        assert "503" in (order.failure_reason or "")

    paypal.close()
    database.close()


def test_outage_order_resumes_with_same_request_id(tmp_path: Path) -> None:
    request_ids: list[str] = []
    outage = {"active": True}
    healthy = _paypal_handler()

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v2/checkout/orders":
            request_ids.append(request.headers.get("PayPal-Request-Id", ""))
            if outage["active"]:
                return httpx.Response(503, json={"name": "SERVICE_UNAVAILABLE"})
        return healthy(request)

    database, paypal, checkout = _make_env(tmp_path, handler)

    failed = checkout.create_order("buyer", "jeez_100_usd")
    assert failed.code == "PAYPAL_UNAVAILABLE"
    order_ref = failed.extra["order_ref"]

    assert checkout.create_order("stranger", "jeez_100_usd", order_ref=order_ref).code == "ORDER_NOT_FOUND"
    assert checkout.create_order("buyer", "jeez_500_usd", order_ref=order_ref).code == "ORDER_STATE_INVALID"

    outage["active"] = False
    resumed = checkout.create_order("buyer", "jeez_100_usd", order_ref=order_ref)
    assert resumed.success is True
    assert resumed.data.id == order_ref
    assert resumed.data.order_id == "PAYPAL-ORDER-1"
    assert resumed.data.status == OrderStatus.PENDING
    assert request_ids == [order_ref, order_ref]

    again = checkout.create_order("buyer", "jeez_100_usd", order_ref=order_ref)
    assert again.code == "ORDER_STATE_INVALID"
    assert again.extra["status"] == "pending"

    with database.session() as session:
        orders = PayPalOrderRepository(session).list_for_user("buyer")
        assert [order.id for order in orders] == [order_ref]
        assert orders[0].failure_reason is None

    paypal.close()
    database.close()


def test_provider_rejection_fails_order(tmp_path: Path) -> None:
    database, paypal, checkout = _make_env(tmp_path, _paypal_handler(create_status=422))

    result = checkout.create_order("buyer", "jeez_100_usd")
    assert result.code == "PAYPAL_REJECTED"
    with database.session() as session:
        assert PayPalOrderRepository(session).get(result.extra["order_ref"]).status == OrderStatus.FAILED

    paypal.close()
    database.close()


def test_capture_records_payer_and_replays(tmp_path: Path) -> None:
    database, paypal, checkout = _make_env(tmp_path, _paypal_handler())
    created = checkout.create_order("buyer", "jeez_100_usd").data

    captured = checkout.capture_order("buyer", created.id)
    assert captured.success is True
    assert captured.replayed is False
    assert captured.data.status == OrderStatus.APPROVED

    again = checkout.capture_order("buyer", "PAYPAL-ORDER-1")
    assert again.success is True
    assert again.replayed is True

    with database.session() as session:
        order = PayPalOrderRepository(session).get(created.id)
        assert order.capture_id == "CAP-1"
        assert order.payer_email == "payer@example.com"
        # Capture alone never completes the order; the webhook does.
        assert order.webhook_verified is False

    assert checkout.capture_order("buyer", "missing").code == "ORDER_NOT_FOUND"

    paypal.close()
    database.close()


def test_capture_rejection_is_reported(tmp_path: Path) -> None:
    database, paypal, checkout = _make_env(tmp_path, _paypal_handler(capture_status=422))
    created = checkout.create_order("buyer", "jeez_100_usd").data

    result = checkout.capture_order("buyer", created.id)
    assert result.code == "PAYPAL_REJECTED"
    assert checkout.get_order("buyer", created.id).data.status == OrderStatus.PENDING

    paypal.close()
    database.close()

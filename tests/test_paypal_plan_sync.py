from __future__ import annotations

import importlib.util
import json
from pathlib import Path
from types import ModuleType
from typing import Any, cast

import httpx

from monetization import DEFAULT_PRICE_TABLE, PayPalClient

BASE_URL = "https://api-m.sandbox.paypal.com"


def _load_sync_module() -> ModuleType:
    path = Path(__file__).resolve().parent.parent / "tools" / "sync_paypal_plans.py"
    spec = importlib.util.spec_from_file_location("sync_paypal_plans_tool", path)
    if spec is None or spec.loader is None:
        raise RuntimeError("failed to load sync_paypal_plans.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_plan_definitions_follow_price_table() -> None:
    module = cast(Any, _load_sync_module())
    plans = {item["product_id"]: item for item in module.plan_definitions(DEFAULT_PRICE_TABLE)}
    assert set(plans) == {"vip_monthly_usd", "vip_quarterly_usd", "vip_annual_usd"}
    assert plans["vip_quarterly_usd"]["interval_count"] == 3
    assert plans["vip_annual_usd"]["interval_count"] == 12
    assert str(plans["vip_monthly_usd"]["price"]) == "9.99"
    assert module.plan_definitions(DEFAULT_PRICE_TABLE, "EUR") == []


def test_sync_creates_product_then_one_plan_per_tier() -> None:
    module = cast(Any, _load_sync_module())
    plan_bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        if request.url.path == "/v1/catalogs/products":
            return httpx.Response(201, json={"id": "PROD-NEW"})
        body = json.loads(request.content)
        plan_bodies.append(body)
        return httpx.Response(201, json={"id": f"P-{len(plan_bodies)}"})

    client = PayPalClient(
        client_id="client-id",
        client_secret="client-secret",
        base_url=BASE_URL,
        http_client=httpx.Client(base_url=BASE_URL, transport=httpx.MockTransport(handler)),
    )
    created = module.sync_plans(client, DEFAULT_PRICE_TABLE, product_id="", create_product=True)
    client.close()

    assert len(created) == 3
    assert {body["product_id"] for body in plan_bodies} == {"PROD-NEW"}
    counts = sorted(body["billing_cycles"][0]["frequency"]["interval_count"] for body in plan_bodies)
    assert counts == [1, 3, 12]


def test_dry_run_never_calls_paypal() -> None:
    module = cast(Any, _load_sync_module())

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError(f"unexpected call to {request.url}")

    client = PayPalClient(
        client_id="client-id",
        client_secret="client-secret",
        base_url=BASE_URL,
        http_client=httpx.Client(base_url=BASE_URL, transport=httpx.MockTransport(handler)),
    )
    created = module.sync_plans(client, DEFAULT_PRICE_TABLE, product_id="PROD_JEEZY_VIP", dry_run=True)
    client.close()
    assert created == {}

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from monetization import (
    Base,
    PlanType,
    TransactionLedger,
    TransactionType,
    User,
    UserRole,
    VIPSubscriptionService,
    add_months,
    build_session_factory,
    session_scope,
)
from monetization.subscription import parse_plan

T0 = datetime(2026, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


def _make_db():
    engine, session_factory = build_session_factory("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    return engine, session_factory


def _make_user(sf, user_id: str, role: UserRole = UserRole.USER) -> None:
    with session_scope(sf) as session:
        session.add(User(id=user_id, email=f"{user_id}@example.com", role=role))


def _role(sf, user_id: str) -> UserRole:
    with session_scope(sf) as session:
        return session.get(User, user_id).role


def test_activate_sets_expiry_and_promotes_user() -> None:
    engine, sf = _make_db()
    _make_user(sf, "alice")

    with session_scope(sf) as session:
        result = VIPSubscriptionService(session).activate("alice", "monthly", "vip_tok_1", "PAYPAL-ORDER-1", now=T0)
    assert result.success is True
    assert result.replayed is False
    assert result.data.plan_type == PlanType.MONTHLY
    assert result.data.expires_at == datetime(2026, 2, 15, 10, 0, 0, tzinfo=timezone.utc)
    assert _role(sf, "alice") == UserRole.VIP

    with session_scope(sf) as session:
        status = VIPSubscriptionService(session).get_status("alice", now=T0 + timedelta(days=1)).data
        entry = TransactionLedger(session).get("vip_tok_1")
    assert status.is_active is True
    assert status.auto_renew is True
    assert status.plan_type == PlanType.MONTHLY
    assert entry.transaction_type == TransactionType.VIP_SUBSCRIPTION
    assert entry.order_id == "PAYPAL-ORDER-1"
    assert entry.vip_subscription_id == status.subscription_id

    engine.dispose()


def test_activate_replay_returns_stored_expiry() -> None:
    engine, sf = _make_db()
    _make_user(sf, "bob")

    with session_scope(sf) as session:
        first = VIPSubscriptionService(session).activate("bob", PlanType.QUARTERLY, "vip_tok_2", now=T0)
    with session_scope(sf) as session:
        replay = VIPSubscriptionService(session).activate(
            "bob",
            PlanType.QUARTERLY,
            "vip_tok_2",
            now=T0 + timedelta(days=10),
        )
    assert replay.success is True
    assert replay.replayed is True
    assert replay.data.expires_at == first.data.expires_at == datetime(2026, 4, 15, 10, 0, 0, tzinfo=timezone.utc)

    with session_scope(sf) as session:
        assert TransactionLedger(session).count_for_user("bob") == 1

    engine.dispose()


def test_renewal_replaces_period_instead_of_extending() -> None:
    engine, sf = _make_db()
    _make_user(sf, "carol")
    later = T0 + timedelta(days=10)

    with session_scope(sf) as session:
        VIPSubscriptionService(session).activate("carol", "monthly", "vip_tok_3a", now=T0)
    with session_scope(sf) as session:
        renewed = VIPSubscriptionService(session).activate("carol", "annual", "vip_tok_3b", now=later)
    assert renewed.success is True
    assert renewed.replayed is False
    assert renewed.data.expires_at == add_months(later, 12)

    with session_scope(sf) as session:
        status = VIPSubscriptionService(session).get_status("carol", now=later).data
    assert status.plan_type == PlanType.ANNUAL
    assert status.start_date == later
    assert status.expires_at == add_months(later, 12)

    engine.dispose()


def test_status_expires_lazily() -> None:
    engine, sf = _make_db()
    _make_user(sf, "dave")

    with session_scope(sf) as session:
        activation = VIPSubscriptionService(session).activate("dave", "monthly", "vip_tok_4", now=T0).data

    with session_scope(sf) as session:
        service = VIPSubscriptionService(session)
        just_before = service.get_status("dave", now=activation.expires_at - timedelta(seconds=1)).data
        at_expiry = service.get_status("dave", now=activation.expires_at).data
    assert just_before.is_active is True
    assert at_expiry.is_active is False
    # The stored row is untouched by reads.
    assert at_expiry.subscription_id == just_before.subscription_id

    engine.dispose()


def test_annual_plan_runs_one_calendar_year() -> None:
    engine, sf = _make_db()
    _make_user(sf, "erin")
    start = datetime(2024, 1, 15, tzinfo=timezone.utc)

    with session_scope(sf) as session:
        result = VIPSubscriptionService(session).activate("erin", "ANNUAL", "vip_tok_annual", now=start)
    assert result.success is True
    assert result.data.expires_at == datetime(2025, 1, 15, tzinfo=timezone.utc)

    with session_scope(sf) as session:
        service = VIPSubscriptionService(session)
        last_day = service.get_status("erin", now=datetime(2025, 1, 14, 23, 59, tzinfo=timezone.utc)).data
        day_after = service.get_status("erin", now=datetime(2025, 1, 16, tzinfo=timezone.utc)).data
    assert last_day.is_active is True
    assert day_after.is_active is False
    assert day_after.plan_type == PlanType.ANNUAL

    engine.dispose()


def test_status_without_subscription_is_inactive() -> None:
    engine, sf = _make_db()
    with session_scope(sf) as session:
        status = VIPSubscriptionService(session).get_status("nobody")
    assert status.success is True
    assert status.data.is_active is False
    assert status.data.expires_at is None
    engine.dispose()


def test_activate_validation_failures() -> None:
    engine, sf = _make_db()
    _make_user(sf, "erin")

    with session_scope(sf) as session:
        service = VIPSubscriptionService(session)
        assert service.activate("erin", "weekly", "vip_bad_plan").code == "INVALID_PLAN"
        assert service.activate("erin", "monthly", "").code == "INVALID_TOKEN"
        assert service.activate("ghost", "monthly", "vip_ghost").code == "USER_NOT_FOUND"

    with session_scope(sf) as session:
        assert TransactionLedger(session).get("vip_ghost") is None

    engine.dispose()


def test_deactivate_demotes_vip_but_not_admin() -> None:
    engine, sf = _make_db()
    _make_user(sf, "frank")
    _make_user(sf, "root", role=UserRole.ADMIN)

    with session_scope(sf) as session:
        service = VIPSubscriptionService(session)
        service.activate("frank", "monthly", "vip_tok_frank", now=T0)
        service.activate("root", "monthly", "vip_tok_root", now=T0)
    assert _role(sf, "root") == UserRole.ADMIN

    with session_scope(sf) as session:
        service = VIPSubscriptionService(session)
        frank = service.deactivate("frank", now=T0 + timedelta(days=1))
        service.deactivate("root", now=T0 + timedelta(days=1))
    assert frank.data.is_active is False
    assert _role(sf, "frank") == UserRole.USER
    assert _role(sf, "root") == UserRole.ADMIN

    engine.dispose()


def test_auto_renew_toggle() -> None:
    engine, sf = _make_db()
    _make_user(sf, "gina")

    with session_scope(sf) as session:
        missing = VIPSubscriptionService(session).set_auto_renew("gina", False)
    assert missing.code == "SUBSCRIPTION_NOT_FOUND"

    with session_scope(sf) as session:
        VIPSubscriptionService(session).activate("gina", "monthly", "vip_tok_gina")
    with session_scope(sf) as session:
        toggled = VIPSubscriptionService(session).set_auto_renew("gina", False)
    assert toggled.success is True
    assert toggled.data.auto_renew is False

    with session_scope(sf) as session:
        VIPSubscriptionService(session).deactivate("gina")
    with session_scope(sf) as session:
        inactive = VIPSubscriptionService(session).set_auto_renew("gina", True)
    assert inactive.code == "SUBSCRIPTION_INACTIVE"

    engine.dispose()


@pytest.mark.parametrize(
    ("start", "months", "expected"),
    [
        (datetime(2026, 1, 31, tzinfo=timezone.utc), 1, datetime(2026, 2, 28, tzinfo=timezone.utc)),
        (datetime(2028, 1, 31, tzinfo=timezone.utc), 1, datetime(2028, 2, 29, tzinfo=timezone.utc)),
        (datetime(2026, 11, 30, tzinfo=timezone.utc), 3, datetime(2027, 2, 28, tzinfo=timezone.utc)),
        (datetime(2026, 5, 15, 8, 30, tzinfo=timezone.utc), 12, datetime(2027, 5, 15, 8, 30, tzinfo=timezone.utc)),
    ],
)
def test_add_months_clamps_to_month_end(start: datetime, months: int, expected: datetime) -> None:
    assert add_months(start, months) == expected


def test_parse_plan_is_case_insensitive() -> None:
    assert parse_plan("Monthly") == PlanType.MONTHLY
    assert parse_plan(" ANNUAL ") == PlanType.ANNUAL
    assert parse_plan(PlanType.QUARTERLY) == PlanType.QUARTERLY
    assert parse_plan("weekly") is None
    assert parse_plan(None) is None

from __future__ import annotations

import calendar
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Final, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from observability import get_logger, log_event

from . import results
from .db import is_transient_db_error
from .ledger import TransactionLedger, as_utc_aware
from .models import (
    PaymentMethod,
    PlanType,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
    UserRole,
    VIPSubscription,
)
from .results import ServiceResult
from .wallet import generate_token

_LOGGER = get_logger("jeezy.monetization.subscription")

PLAN_MONTHS: Final[dict[PlanType, int]] = {
    PlanType.MONTHLY: 1,
    PlanType.QUARTERLY: 3,
    PlanType.ANNUAL: 12,
}
_MAX_ATTEMPTS: Final[int] = 5


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the target month's last day."""
    month_index = value.month - 1 + int(months)
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def parse_plan(value: Any) -> Optional[PlanType]:
    if isinstance(value, PlanType):
        return value
    raw = str(value or "").strip().lower()
    for plan in PlanType:
        if plan.value == raw:
            return plan
    return None


class SubscriptionConflictError(RuntimeError):
    pass


class _TokenReplayed(Exception):
    def __init__(self, entry: Transaction) -> None:
        super().__init__(entry.transaction_id)
        self.entry = entry


class _UserMissing(Exception):
    pass


@dataclass(frozen=True)
class VIPStatus:
    user_id: str
    is_active: bool
    plan_type: Optional[PlanType] = None
    start_date: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    auto_renew: bool = False
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class VIPActivation:
    user_id: str
    subscription_id: str
    plan_type: PlanType
    expires_at: datetime
    transaction_id: str


class VIPSubscriptionService:
    TOKEN_PREFIX: Final[str] = "vip"

    def __init__(self, session: Session) -> None:
        self.session = session
        self.ledger = TransactionLedger(session)

    @classmethod
    def generate_token(cls) -> str:
        return generate_token(cls.TOKEN_PREFIX)

    def _get_subscription(self, user_id: str) -> Optional[VIPSubscription]:
        return self.session.scalar(
            select(VIPSubscription).where(VIPSubscription.user_id == user_id).execution_options(populate_existing=True)
        )

    def _status(self, user_id: str, subscription: Optional[VIPSubscription], now: datetime) -> VIPStatus:
        if subscription is None:
            return VIPStatus(user_id=user_id, is_active=False)
        expires_at = as_utc_aware(subscription.expires_at)
        # Expiry is applied lazily on read; no background job flips is_active.
        effective = bool(subscription.is_active) and now < expires_at
        return VIPStatus(
            user_id=user_id,
            is_active=effective,
            plan_type=subscription.plan_type,
            start_date=as_utc_aware(subscription.start_date) if subscription.start_date else None,
            expires_at=expires_at,
            auto_renew=bool(subscription.auto_renew),
            subscription_id=subscription.id,
        )

    def get_status(self, user_id: str, *, now: Optional[datetime] = None) -> ServiceResult[VIPStatus]:
        key = str(user_id or "").strip()
        current = as_utc_aware(now) if now else datetime.now(timezone.utc)
        subscription = self._get_subscription(key) if key else None
        return ServiceResult.ok(self._status(key, subscription, current))

    def _upsert_subscription(
        self,
        user_id: str,
        plan: PlanType,
        start: datetime,
        expires_at: datetime,
    ) -> VIPSubscription:
        subscription = self._get_subscription(user_id)
        if subscription is None:
            created = VIPSubscription(
                user_id=user_id,
                is_active=True,
                plan_type=plan,
                start_date=start,
                expires_at=expires_at,
                auto_renew=True,
                renewal_date=expires_at,
                created_at=start,
                updated_at=start,
            )
            try:
                with self.session.begin_nested():
                    self.session.add(created)
                    self.session.flush()
                return created
            except IntegrityError:
                subscription = self._get_subscription(user_id)
                if subscription is None:
                    raise
        # Renewal replaces the period; it does not extend the previous expiry.
        subscription.is_active = True
        subscription.plan_type = plan
        subscription.start_date = start
        subscription.expires_at = expires_at
        subscription.auto_renew = True
        subscription.renewal_date = expires_at
        subscription.updated_at = start
        self.session.flush()
        return subscription

    def activate(
        self,
        user_id: str,
        plan_type: Any,
        token: str,
        provider_order_ref: Optional[str] = None,
        *,
        payment_method: PaymentMethod = PaymentMethod.PAYPAL,
        now: Optional[datetime] = None,
    ) -> ServiceResult[VIPActivation]:
        plan = parse_plan(plan_type)
        if plan is None:
            return ServiceResult.fail(results.INVALID_PLAN, f"Unknown plan: {plan_type}")
        key = str(user_id or "").strip()
        transaction_id = str(token or "").strip()
        if not key or not transaction_id:
            return ServiceResult.fail(results.INVALID_TOKEN, "user id and transaction token are required")

        for attempt in range(_MAX_ATTEMPTS):
            current = as_utc_aware(now) if now else datetime.now(timezone.utc)
            try:
                with self.session.begin_nested():
                    existing = self.ledger.get(transaction_id)
                    if existing is not None:
                        raise _TokenReplayed(existing)
                    user = self.session.get(User, key, populate_existing=True)
                    if user is None:
                        raise _UserMissing()
                    expires_at = add_months(current, PLAN_MONTHS[plan])
                    subscription = self._upsert_subscription(key, plan, current, expires_at)
                    if user.role != UserRole.ADMIN:
                        user.role = UserRole.VIP
                        user.updated_at = current
                    self.session.flush()
                    write = self.ledger.record(
                        token=transaction_id,
                        user_id=key,
                        transaction_type=TransactionType.VIP_SUBSCRIPTION,
                        amount=Decimal("0.00"),
                        status=TransactionStatus.COMPLETED,
                        payment_method=payment_method,
                        description=f"VIP {plan.value} subscription",
                        order_id=provider_order_ref,
                        vip_subscription_id=subscription.id,
                        metadata={"plan": plan.value, "expires_at": expires_at.isoformat()},
                        now=current,
                    )
                    if not write.applied:
                        raise _TokenReplayed(write.entry)
                    activation = VIPActivation(
                        user_id=key,
                        subscription_id=subscription.id,
                        plan_type=plan,
                        expires_at=expires_at,
                        transaction_id=transaction_id,
                    )
            except _TokenReplayed as replay:
                return self._replayed_activation(key, plan, replay.entry)
            except _UserMissing:
                return ServiceResult.fail(results.USER_NOT_FOUND, "User not found")
            except OperationalError as exc:
                if is_transient_db_error(exc) and attempt < _MAX_ATTEMPTS - 1:
                    time.sleep(0.02 * (attempt + 1))
                    continue
                raise
            log_event(
                _LOGGER,
                logging.INFO,
                "vip.activate.applied",
                user_id=key,
                plan=plan,
                expires_at=activation.expires_at,
                transaction_id=transaction_id,
                order_id=provider_order_ref,
            )
            return ServiceResult.ok(activation)
        raise SubscriptionConflictError(f"vip activation conflict for user={key}")

    def _replayed_activation(
        self,
        user_id: str,
        plan: PlanType,
        entry: Transaction,
    ) -> ServiceResult[VIPActivation]:
        log_event(
            _LOGGER,
            logging.INFO,
            "vip.activate.replayed",
            user_id=user_id,
            transaction_id=entry.transaction_id,
            entry_status=entry.status,
        )
        subscription = self._get_subscription(user_id)
        if subscription is None:
            return ServiceResult.fail(results.SUBSCRIPTION_NOT_FOUND, "No subscription found")
        return ServiceResult.ok(
            VIPActivation(
                user_id=user_id,
                subscription_id=subscription.id,
                plan_type=subscription.plan_type or plan,
                expires_at=as_utc_aware(subscription.expires_at),
                transaction_id=entry.transaction_id,
            ),
            replayed=True,
        )

    def deactivate(self, user_id: str, *, now: Optional[datetime] = None) -> ServiceResult[VIPStatus]:
        key = str(user_id or "").strip()
        current = as_utc_aware(now) if now else datetime.now(timezone.utc)
        self.session.execute(
            update(VIPSubscription)
            .where(VIPSubscription.user_id == key)
            .values(is_active=False, updated_at=current)
        )
        # Only VIPs are demoted; admins keep their role.
        self.session.execute(
            update(User)
            .where(User.id == key, User.role == UserRole.VIP)
            .values(role=UserRole.USER, updated_at=current)
        )
        self.session.flush()
        log_event(_LOGGER, logging.INFO, "vip.deactivated", user_id=key)
        return ServiceResult.ok(self._status(key, self._get_subscription(key), current))

    def set_auto_renew(
        self,
        user_id: str,
        enabled: bool,
        *,
        now: Optional[datetime] = None,
    ) -> ServiceResult[VIPStatus]:
        key = str(user_id or "").strip()
        current = as_utc_aware(now) if now else datetime.now(timezone.utc)
        subscription = self._get_subscription(key)
        if subscription is None:
            return ServiceResult.fail(results.SUBSCRIPTION_NOT_FOUND, "No subscription found")
        if not subscription.is_active:
            return ServiceResult.fail(results.SUBSCRIPTION_INACTIVE, "Subscription is not active")
        subscription.auto_renew = bool(enabled)
        subscription.updated_at = current
        self.session.flush()
        log_event(_LOGGER, logging.INFO, "vip.auto_renew.updated", user_id=key, auto_renew=bool(enabled))
        return ServiceResult.ok(self._status(key, subscription, current))

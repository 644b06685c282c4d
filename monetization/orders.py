from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from observability import get_logger, log_event

from . import results
from .db import Database
from .ledger import as_utc_aware
from .models import OrderStatus, PayPalOrder, User, WebhookAuditLog
from .paypal import PayPalClient, PayPalConfigError, PayPalRejectedError, PayPalTransientError
from .pricing import PriceTable
from .results import ServiceResult

_LOGGER = get_logger("jeezy.monetization.orders")


class OrderStateError(RuntimeError):
    pass


@dataclass(frozen=True)
class OrderView:
    id: str
    order_id: Optional[str]
    user_id: str
    product_id: str
    amount: Decimal
    currency: str
    status: OrderStatus
    approve_url: Optional[str] = None
    webhook_verified: bool = False
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, order: PayPalOrder) -> "OrderView":
        return cls(
            id=order.id,
            order_id=order.order_id,
            user_id=order.user_id,
            product_id=order.product_id,
            amount=Decimal(str(order.amount)).quantize(Decimal("0.01")),
            currency=order.currency,
            status=order.status,
            approve_url=order.approve_url,
            webhook_verified=bool(order.webhook_verified),
            created_at=as_utc_aware(order.created_at) if order.created_at else None,
            completed_at=as_utc_aware(order.completed_at) if order.completed_at else None,
        )


class PayPalOrderRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, local_id: str) -> Optional[PayPalOrder]:
        key = str(local_id or "").strip()
        if not key:
            return None
        return self.session.get(PayPalOrder, key)

    def get_by_provider_id(self, order_id: str) -> Optional[PayPalOrder]:
        key = str(order_id or "").strip()
        if not key:
            return None
        return self.session.scalar(
            select(PayPalOrder).where(PayPalOrder.order_id == key).execution_options(populate_existing=True)
        )

    def find_for_user(self, user_id: str, reference: str) -> Optional[PayPalOrder]:
        key = str(reference or "").strip()
        if not key:
            return None
        return self.session.scalar(
            select(PayPalOrder).where(
                PayPalOrder.user_id == str(user_id),
                or_(PayPalOrder.id == key, PayPalOrder.order_id == key),
            )
        )

    def create_pending(
        self,
        *,
        user_id: str,
        product_id: str,
        amount: Decimal,
        currency: str,
        now: Optional[datetime] = None,
    ) -> PayPalOrder:
        current = as_utc_aware(now) if now else datetime.now(timezone.utc)
        order = PayPalOrder(
            user_id=str(user_id),
            product_id=product_id,
            amount=amount,
            currency=str(currency or "USD").upper(),
            status=OrderStatus.CREATED,
            created_at=current,
            updated_at=current,
        )
        self.session.add(order)
        self.session.flush()
        return order

    def attach_provider_order(self, local_id: str, *, order_id: str, approve_url: Optional[str]) -> PayPalOrder:
        order = self.get(local_id)
        if order is None:
            raise OrderStateError(f"order not found: {local_id}")
        if order.status != OrderStatus.CREATED:
            raise OrderStateError(f"order {local_id} is {order.status.value}, expected created")
        order.order_id = order_id
        order.approve_url = approve_url
        order.status = OrderStatus.PENDING
        order.failure_reason = None
        order.updated_at = datetime.now(timezone.utc)
        self.session.flush()
        return order

    def note_failure(self, local_id: str, reason: str, *, terminal: bool) -> None:
        order = self.get(local_id)
        if order is None:
            return
        order.failure_reason = str(reason or "")[:1000]
        if terminal and order.status in {OrderStatus.CREATED, OrderStatus.PENDING}:
            order.status = OrderStatus.FAILED
        order.updated_at = datetime.now(timezone.utc)
        self.session.flush()

    def record_capture(
        self,
        order: PayPalOrder,
        *,
        capture_id: Optional[str],
        payer_email: Optional[str],
        payer_name: Optional[str],
    ) -> PayPalOrder:
        order.capture_id = capture_id or order.capture_id
        order.payer_email = payer_email or order.payer_email
        order.payer_name = payer_name or order.payer_name
        if order.status in {OrderStatus.CREATED, OrderStatus.PENDING}:
            order.status = OrderStatus.APPROVED
        order.updated_at = datetime.now(timezone.utc)
        self.session.flush()
        return order

    def mark_completed(
        self,
        order: PayPalOrder,
        *,
        raw_webhook: str,
        payer_email: Optional[str] = None,
        payer_name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Flip the order to COMPLETED once; False when another delivery already did."""
        current = as_utc_aware(now) if now else datetime.now(timezone.utc)
        values: dict[str, Any] = {
            "status": OrderStatus.COMPLETED,
            "webhook_verified": True,
            "completed_at": current,
            "updated_at": current,
            "raw_webhook_data": raw_webhook,
        }
        if payer_email:
            values["payer_email"] = payer_email
        if payer_name:
            values["payer_name"] = payer_name
        result = self.session.execute(
            update(PayPalOrder)
            .where(PayPalOrder.id == order.id, PayPalOrder.webhook_verified.is_(False))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            return False
        self.session.refresh(order)
        return True

    def list_for_user(self, user_id: str, *, limit: int = 20, offset: int = 0) -> list[PayPalOrder]:
        query = (
            select(PayPalOrder)
            .where(PayPalOrder.user_id == str(user_id))
            .order_by(PayPalOrder.created_at.desc())
            .limit(max(1, min(int(limit), 50)))
            .offset(max(0, int(offset)))
        )
        return list(self.session.scalars(query).all())

    def status_by_provider_ids(self, order_ids: list[str]) -> dict[str, OrderStatus]:
        keys = [item for item in {str(value or "").strip() for value in order_ids} if item]
        if not keys:
            return {}
        rows = self.session.execute(
            select(PayPalOrder.order_id, PayPalOrder.status).where(PayPalOrder.order_id.in_(keys))
        ).all()
        return {str(row.order_id): row.status for row in rows}

    def record_audit_log(
        self,
        *,
        event_type: str,
        raw_payload: str,
        outcome: str,
        http_status: int,
        signature_valid: bool = False,
        external_event_id: Optional[str] = None,
        external_order_id: Optional[str] = None,
        transmission_id: Optional[str] = None,
        detail: Optional[str] = None,
        provider: str = "paypal",
        occurred_at: Optional[datetime] = None,
    ) -> WebhookAuditLog:
        log = WebhookAuditLog(
            provider=str(provider or "paypal")[:32],
            event_type=str(event_type or "")[:64] or "unknown",
            external_event_id=str(external_event_id)[:128] if external_event_id else None,
            external_order_id=str(external_order_id)[:128] if external_order_id else None,
            transmission_id=str(transmission_id)[:128] if transmission_id else None,
            signature_valid=bool(signature_valid),
            raw_payload=str(raw_payload or ""),
            outcome=str(outcome or "")[:32] or "unknown",
            http_status=int(http_status),
            detail=str(detail) if detail else None,
            occurred_at=as_utc_aware(occurred_at) if occurred_at else datetime.now(timezone.utc),
        )
        self.session.add(log)
        self.session.flush()
        return log

    def list_audit_logs(self, *, external_order_id: Optional[str] = None, limit: int = 50) -> list[WebhookAuditLog]:
        query = select(WebhookAuditLog).order_by(WebhookAuditLog.occurred_at.desc())
        if external_order_id:
            query = query.where(WebhookAuditLog.external_order_id == str(external_order_id).strip())
        return list(self.session.scalars(query.limit(max(1, min(int(limit), 200)))).all())

    def count_audit_logs(self, *, outcome: Optional[str] = None) -> int:
        query = select(func.count()).select_from(WebhookAuditLog)
        if outcome:
            query = query.where(WebhookAuditLog.outcome == outcome)
        return int(self.session.scalar(query) or 0)


class CheckoutService:
    """
    Creates provider orders for catalog products.

    The local order row is committed before PayPal is contacted, so every
    provider order that can later be reconciled has a record to match.
    """

    def __init__(
        self,
        database: Database,
        paypal: PayPalClient,
        prices: PriceTable,
        *,
        return_url: str,
        cancel_url: str,
    ) -> None:
        self.database = database
        self.paypal = paypal
        self.prices = prices
        self.return_url = return_url
        self.cancel_url = cancel_url

    def create_order(
        self,
        user_id: str,
        product_id: str,
        *,
        order_ref: Optional[str] = None,
    ) -> ServiceResult[OrderView]:
        """
        Create a provider order for a catalog product.

        Passing `order_ref` resumes a local order still in CREATED after a
        provider outage; the same local id is sent as `PayPal-Request-Id`, so
        PayPal returns the order it may already have created.
        """

        price = self.prices.get(product_id)
        if price is None:
            return ServiceResult.fail(results.UNKNOWN_PRODUCT, f"Unknown product: {product_id}")
        key = str(user_id or "").strip()
        resume_ref = str(order_ref or "").strip()
        with self.database.session() as session:
            if session.get(User, key) is None:
                return ServiceResult.fail(results.USER_NOT_FOUND, "User not found")
            repo = PayPalOrderRepository(session)
            if resume_ref:
                order = repo.get(resume_ref)
                if order is None or order.user_id != key:
                    return ServiceResult.fail(results.ORDER_NOT_FOUND, "Order not found")
                if order.status != OrderStatus.CREATED or order.product_id != price.product_id:
                    return ServiceResult.fail(
                        results.ORDER_STATE_INVALID,
                        "Order cannot be resumed",
                        order_ref=order.id,
                        status=order.status.value,
                    )
            else:
                order = repo.create_pending(
                    user_id=key,
                    product_id=price.product_id,
                    amount=price.amount,
                    currency=price.currency,
                )
            local_id = order.id

        try:
            provider_order = self.paypal.create_order(
                reference_id=local_id,
                product=price,
                return_url=self.return_url,
                cancel_url=self.cancel_url,
            )
        except PayPalTransientError as exc:
            # Outcome unknown; the row stays CREATED and can be resumed by order_ref.
            with self.database.session() as session:
                PayPalOrderRepository(session).note_failure(local_id, str(exc), terminal=False)
            log_event(_LOGGER, logging.WARNING, "checkout.order.provider_unavailable", order_ref=local_id, error=str(exc))
            return ServiceResult.fail(results.PAYPAL_UNAVAILABLE, "Payment provider unavailable", order_ref=local_id)
        except (PayPalRejectedError, PayPalConfigError) as exc:
            with self.database.session() as session:
                PayPalOrderRepository(session).note_failure(local_id, str(exc), terminal=True)
            log_event(_LOGGER, logging.WARNING, "checkout.order.provider_rejected", order_ref=local_id, error=str(exc))
            return ServiceResult.fail(results.PAYPAL_REJECTED, "Payment provider rejected the order", order_ref=local_id)

        with self.database.session() as session:
            order = PayPalOrderRepository(session).attach_provider_order(
                local_id,
                order_id=provider_order.order_id,
                approve_url=provider_order.approve_url,
            )
            view = OrderView.from_row(order)
        log_event(
            _LOGGER,
            logging.INFO,
            "checkout.order.created",
            user_id=key,
            order_ref=local_id,
            order_id=view.order_id,
            product_id=view.product_id,
            amount=view.amount,
            resumed=bool(resume_ref),
        )
        return ServiceResult.ok(view)

    def get_order(self, user_id: str, reference: str) -> ServiceResult[OrderView]:
        with self.database.session() as session:
            order = PayPalOrderRepository(session).find_for_user(user_id, reference)
            if order is None:
                return ServiceResult.fail(results.ORDER_NOT_FOUND, "Order not found")
            return ServiceResult.ok(OrderView.from_row(order))

    def capture_order(self, user_id: str, reference: str) -> ServiceResult[OrderView]:
        """
        Capture an approved order.

        Capturing records payer details only; the wallet or subscription is
        credited when the verified webhook arrives.
        """

        with self.database.session() as session:
            order = PayPalOrderRepository(session).find_for_user(user_id, reference)
            if order is None or not order.order_id:
                return ServiceResult.fail(results.ORDER_NOT_FOUND, "Order not found")
            if order.status in {OrderStatus.COMPLETED, OrderStatus.APPROVED}:
                return ServiceResult.ok(OrderView.from_row(order), replayed=True)
            if order.status == OrderStatus.FAILED:
                return ServiceResult.fail(results.ORDER_STATE_INVALID, "Order has failed")
            local_id = order.id
            provider_order_id = order.order_id

        try:
            capture = self.paypal.capture_order(provider_order_id, request_id=f"capture-{local_id}")
        except PayPalTransientError as exc:
            log_event(_LOGGER, logging.WARNING, "checkout.capture.provider_unavailable", order_id=provider_order_id)
            return ServiceResult.fail(results.PAYPAL_UNAVAILABLE, str(exc))
        except (PayPalRejectedError, PayPalConfigError) as exc:
            log_event(_LOGGER, logging.WARNING, "checkout.capture.provider_rejected", order_id=provider_order_id, error=str(exc))
            return ServiceResult.fail(results.PAYPAL_REJECTED, "Payment provider rejected the capture")

        with self.database.session() as session:
            repo = PayPalOrderRepository(session)
            order = repo.get(local_id)
            if order is None:
                return ServiceResult.fail(results.ORDER_NOT_FOUND, "Order not found")
            repo.record_capture(
                order,
                capture_id=capture.capture_id,
                payer_email=capture.payer_email,
                payer_name=capture.payer_name,
            )
            view = OrderView.from_row(order)
        log_event(
            _LOGGER,
            logging.INFO,
            "checkout.capture.recorded",
            order_id=provider_order_id,
            capture_id=capture.capture_id,
            provider_status=capture.status,
        )
        return ServiceResult.ok(view)

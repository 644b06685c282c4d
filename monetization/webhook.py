from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Final, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError

from observability import get_logger, log_event

from . import results
from .db import Database, apply_transaction_timeouts
from .models import User
from .notifications import EmailSender, PurchaseReceipt, send_purchase_receipt
from .orders import PayPalOrderRepository
from .pricing import PriceTable, ProductInfo
from .subscription import VIPSubscriptionService
from .verification import HEADER_TRANSMISSION_ID, ParsedWebhook, PaymentVerificationService, normalize_headers
from .wallet import JeezWalletService

_LOGGER = get_logger("jeezy.monetization.webhook")

ACTIONABLE_EVENT_TYPE: Final[str] = "CHECKOUT.ORDER.COMPLETED"


class ReconcileState(str, enum.Enum):
    RECEIVED = "received"
    SIGNATURE_CHECKED = "signature_checked"
    PARSED = "parsed"
    PRICE_VALIDATED = "price_validated"
    ORDER_MATCHED = "order_matched"
    APPLIED = "applied"
    ACKNOWLEDGED = "acknowledged"
    REJECTED = "rejected"


class WebhookApplyError(RuntimeError):
    """Raised inside the reconciliation transaction to roll every write back."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class _OrderUnmatched(Exception):
    pass


class _AlreadyProcessed(Exception):
    pass


class _ProductMismatch(Exception):
    pass


@dataclass(frozen=True)
class WebhookOutcome:
    http_status: int
    body: dict[str, Any]
    state: ReconcileState
    outcome: str
    code: Optional[str] = None


@dataclass
class _Delivery:
    raw_text: str
    transmission_id: Optional[str]
    signature_valid: bool = False
    event_type: str = "unknown"
    event_id: Optional[str] = None
    order_id: Optional[str] = None
    state: ReconcileState = ReconcileState.RECEIVED
    trail: list[str] = field(default_factory=list)

    def advance(self, state: ReconcileState) -> None:
        self.state = state
        self.trail.append(state.value)


@dataclass(frozen=True)
class _Applied:
    user_id: str
    email: Optional[str]
    name: Optional[str]


class WebhookReconciler:
    """
    Turns a PayPal notification into at most one wallet credit or VIP
    activation.

    RECEIVED -> SIGNATURE_CHECKED -> PARSED -> PRICE_VALIDATED ->
    ORDER_MATCHED -> APPLIED -> ACKNOWLEDGED, or REJECTED from any step.
    Every delivery leaves one audit row, written in its own transaction.
    """

    def __init__(
        self,
        database: Database,
        verifier: PaymentVerificationService,
        prices: PriceTable,
        *,
        email_sender: Optional[EmailSender] = None,
        lock_timeout_ms: int = 5000,
        statement_timeout_ms: int = 10000,
    ) -> None:
        self.database = database
        self.verifier = verifier
        self.prices = prices
        self.email_sender = email_sender
        self.lock_timeout_ms = int(lock_timeout_ms)
        self.statement_timeout_ms = int(statement_timeout_ms)

    def _audit(self, delivery: _Delivery, *, outcome: str, http_status: int, detail: Optional[str] = None) -> None:
        with self.database.session() as session:
            PayPalOrderRepository(session).record_audit_log(
                event_type=delivery.event_type,
                raw_payload=delivery.raw_text,
                outcome=outcome,
                http_status=http_status,
                signature_valid=delivery.signature_valid,
                external_event_id=delivery.event_id,
                external_order_id=delivery.order_id,
                transmission_id=delivery.transmission_id,
                detail=detail or " > ".join(delivery.trail),
            )

    def _finish(
        self,
        delivery: _Delivery,
        *,
        http_status: int,
        outcome: str,
        body: dict[str, Any],
        code: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> WebhookOutcome:
        if http_status >= 400:
            delivery.advance(ReconcileState.REJECTED)
        else:
            delivery.advance(ReconcileState.ACKNOWLEDGED)
        self._audit(delivery, outcome=outcome, http_status=http_status, detail=detail)
        log_event(
            _LOGGER,
            logging.INFO if http_status < 400 else logging.WARNING,
            "webhook.acknowledged" if http_status < 400 else "webhook.rejected",
            outcome=outcome,
            http_status=http_status,
            code=code,
            event_type=delivery.event_type,
            order_id=delivery.order_id,
            transmission_id=delivery.transmission_id,
            trail=delivery.trail,
        )
        return WebhookOutcome(
            http_status=http_status,
            body=body,
            state=delivery.state,
            outcome=outcome,
            code=code,
        )

    def _reject(self, delivery: _Delivery, http_status: int, outcome: str, code: str, message: str) -> WebhookOutcome:
        return self._finish(
            delivery,
            http_status=http_status,
            outcome=outcome,
            body={"error": message, "code": code},
            code=code,
            detail=f"{code}: {message}",
        )

    def handle(
        self,
        raw_body: bytes,
        headers: Mapping[str, Any],
        *,
        now: Optional[datetime] = None,
    ) -> WebhookOutcome:
        raw = bytes(raw_body or b"")
        delivery = _Delivery(
            raw_text=raw.decode("utf-8", errors="replace"),
            transmission_id=normalize_headers(headers).get(HEADER_TRANSMISSION_ID) or None,
        )
        delivery.advance(ReconcileState.RECEIVED)
        log_event(
            _LOGGER,
            logging.INFO,
            "webhook.received",
            transmission_id=delivery.transmission_id,
            body_bytes=len(raw),
        )

        signature = self.verifier.verify_signature(raw, headers)
        if not signature.success:
            return self._reject(
                delivery,
                401,
                "rejected_signature",
                results.INVALID_SIGNATURE,
                signature.error or "Invalid webhook signature",
            )
        delivery.signature_valid = True
        delivery.advance(ReconcileState.SIGNATURE_CHECKED)

        try:
            payload = json.loads(raw.decode("utf-8"))
        except ValueError as exc:
            return self._reject(delivery, 400, "rejected_payload", results.INVALID_PAYLOAD, f"Invalid JSON: {exc}")
        parsed_result = self.verifier.parse_webhook(payload)
        if not parsed_result.success or parsed_result.data is None:
            if isinstance(payload, Mapping):
                delivery.event_type = str(payload.get("event_type") or "unknown")
            return self._reject(
                delivery,
                400,
                "rejected_payload",
                parsed_result.code or results.INVALID_PAYLOAD,
                parsed_result.error or "Invalid webhook payload",
            )
        parsed = parsed_result.data
        delivery.event_type = parsed.event_type
        delivery.event_id = parsed.event_id
        delivery.order_id = parsed.order_id
        delivery.advance(ReconcileState.PARSED)

        if parsed.event_type != ACTIONABLE_EVENT_TYPE:
            return self._finish(delivery, http_status=200, outcome="ignored", body={"status": "ignored"})

        product = self.verifier.classify_product(parsed.custom_id)
        if not product.is_known:
            return self._reject(
                delivery,
                400,
                "rejected_product",
                results.UNKNOWN_PRODUCT,
                f"Unknown product type: {parsed.custom_id}",
            )
        price = self.prices.get(product.product_id)
        if price is None:
            return self._reject(
                delivery,
                400,
                "rejected_price",
                results.AMOUNT_MISMATCH,
                f"Price not found for {product.product_id}",
            )
        check = self.verifier.validate_amount(
            price.amount,
            parsed.amount if parsed.amount is not None else "0",
            price.currency,
            parsed.currency,
        )
        if not check.success:
            log_event(
                _LOGGER,
                logging.WARNING,
                "webhook.potential_fraud",
                order_id=parsed.order_id,
                product_id=product.product_id,
                expected_amount=price.amount,
                received_amount=parsed.amount,
                expected_currency=price.currency,
                received_currency=parsed.currency,
                code=check.code,
            )
            return self._reject(
                delivery,
                400,
                "rejected_price",
                check.code or results.AMOUNT_MISMATCH,
                check.error or "Amount validation failed",
            )
        delivery.advance(ReconcileState.PRICE_VALIDATED)

        try:
            applied = self._apply(delivery, parsed, product, now=now)
        except _OrderUnmatched:
            return self._reject(delivery, 404, "rejected_order", results.ORDER_NOT_FOUND, "Order not found")
        except _ProductMismatch:
            log_event(
                _LOGGER,
                logging.WARNING,
                "webhook.potential_fraud",
                order_id=parsed.order_id,
                product_id=product.product_id,
                reason="product does not match order",
            )
            return self._reject(
                delivery,
                400,
                "rejected_price",
                results.AMOUNT_MISMATCH,
                "Product does not match order",
            )
        except _AlreadyProcessed:
            return self._finish(
                delivery,
                http_status=200,
                outcome="duplicate",
                body={"status": "duplicate", "order_id": parsed.order_id},
            )
        except WebhookApplyError as exc:
            log_event(
                _LOGGER,
                logging.ERROR,
                "webhook.apply_failed",
                order_id=parsed.order_id,
                code=exc.code,
                error=str(exc),
            )
            return self._reject(delivery, 500, "apply_failed", "WEBHOOK_ERROR", "Webhook processing failed")
        except SQLAlchemyError as exc:
            log_event(
                _LOGGER,
                logging.ERROR,
                "webhook.storage_failed",
                order_id=parsed.order_id,
                exception_type=type(exc).__name__,
                error=str(exc),
            )
            return self._reject(delivery, 500, "storage_failed", results.DB_ERROR, "Webhook processing failed")

        outcome = self._finish(
            delivery,
            http_status=200,
            outcome="processed",
            body={
                "status": "processed",
                "order_id": parsed.order_id,
                "product_type": product.kind,
                "user_id": applied.user_id,
            },
        )
        recipient = applied.email or parsed.payer_email
        if recipient:
            send_purchase_receipt(
                self.email_sender,
                PurchaseReceipt(
                    to=recipient,
                    order_id=parsed.order_id,
                    product_label=price.label,
                    amount=price.amount,
                    currency=price.currency,
                    customer_name=applied.name or parsed.payer_name,
                ),
            )
        return outcome

    def _apply(
        self,
        delivery: _Delivery,
        parsed: ParsedWebhook,
        product: ProductInfo,
        *,
        now: Optional[datetime],
    ) -> _Applied:
        with self.database.session() as session:
            apply_transaction_timeouts(
                session,
                lock_timeout_ms=self.lock_timeout_ms,
                statement_timeout_ms=self.statement_timeout_ms,
            )
            repo = PayPalOrderRepository(session)
            order = repo.get_by_provider_id(parsed.order_id)
            if order is None:
                raise _OrderUnmatched()
            if order.webhook_verified:
                raise _AlreadyProcessed()
            if str(order.product_id or "").strip().lower() != product.product_id:
                raise _ProductMismatch()
            delivery.advance(ReconcileState.ORDER_MATCHED)

            if not repo.mark_completed(
                order,
                raw_webhook=delivery.raw_text,
                payer_email=parsed.payer_email,
                payer_name=parsed.payer_name,
                now=now,
            ):
                raise _AlreadyProcessed()

            user_id = order.user_id
            if product.kind == "JEEZ":
                wallet = JeezWalletService(session)
                outcome = wallet.credit(
                    user_id,
                    product.jeez_quantity,
                    wallet.generate_token(),
                    f"PayPal order {parsed.order_id} completed",
                    order_id=parsed.order_id,
                    metadata={"product_id": product.product_id},
                    now=now,
                )
            else:
                subscriptions = VIPSubscriptionService(session)
                outcome = subscriptions.activate(
                    user_id,
                    product.plan,
                    subscriptions.generate_token(),
                    parsed.order_id,
                    now=now,
                )
            if not outcome.success:
                raise WebhookApplyError(outcome.code or "UNEXPECTED_ERROR", outcome.error or "apply failed")
            delivery.advance(ReconcileState.APPLIED)

            user = session.get(User, user_id)
            return _Applied(
                user_id=user_id,
                email=user.email if user is not None else None,
                name=user.name if user is not None else None,
            )

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import PaymentMethod, Transaction, TransactionStatus, TransactionType


def as_utc_aware(dt: datetime) -> datetime:
    """
    Normalize datetimes to UTC aware.

    SQLite returns offset-naive datetimes even for DateTime(timezone=True)
    columns; naive values are treated as UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def encode_metadata(metadata: Optional[dict[str, Any]]) -> Optional[str]:
    if not metadata:
        return None
    return json.dumps(metadata, ensure_ascii=False, sort_keys=True, default=str)


def decode_metadata(raw: Optional[str]) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {"legacy": raw}
    return parsed if isinstance(parsed, dict) else {"legacy": parsed}


class LedgerStateError(RuntimeError):
    pass


@dataclass(frozen=True)
class LedgerWrite:
    """Result of `TransactionLedger.record`: `applied` is False on token replay."""

    applied: bool
    entry: Transaction


class TransactionLedger:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, token: str) -> Optional[Transaction]:
        key = str(token or "").strip()
        if not key:
            return None
        return self.session.scalar(select(Transaction).where(Transaction.transaction_id == key))

    def record(
        self,
        *,
        token: str,
        user_id: str,
        transaction_type: TransactionType,
        amount: Decimal,
        status: TransactionStatus = TransactionStatus.PENDING,
        payment_method: PaymentMethod = PaymentMethod.WALLET,
        description: Optional[str] = None,
        order_id: Optional[str] = None,
        vip_subscription_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> LedgerWrite:
        key = str(token or "").strip()
        if not key:
            raise LedgerStateError("transaction token is required")
        existing = self.get(key)
        if existing is not None:
            return LedgerWrite(applied=False, entry=existing)

        current = as_utc_aware(now) if now else datetime.now(timezone.utc)
        entry = Transaction(
            transaction_id=key,
            user_id=str(user_id),
            transaction_type=transaction_type,
            amount=amount,
            status=status,
            payment_method=payment_method,
            description=description,
            order_id=order_id,
            vip_subscription_id=vip_subscription_id,
            meta_json=encode_metadata(metadata),
            created_at=current,
            completed_at=current if status == TransactionStatus.COMPLETED else None,
        )
        try:
            with self.session.begin_nested():
                self.session.add(entry)
                self.session.flush()
        except IntegrityError:
            # Concurrent insert of the same token won the race.
            existing = self.get(key)
            if existing is None:
                raise
            return LedgerWrite(applied=False, entry=existing)
        return LedgerWrite(applied=True, entry=entry)

    def mark_completed(
        self,
        token: str,
        *,
        capture_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Transaction:
        return self._transition(
            token,
            TransactionStatus.COMPLETED,
            now=now,
            values={"capture_id": capture_id} if capture_id else {},
        )

    def mark_failed(self, token: str, reason: str, *, now: Optional[datetime] = None) -> Transaction:
        return self._transition(
            token,
            TransactionStatus.FAILED,
            now=now,
            values={"failure_reason": str(reason or "").strip() or "unknown"},
        )

    def _transition(
        self,
        token: str,
        target: TransactionStatus,
        *,
        now: Optional[datetime],
        values: dict[str, Any],
    ) -> Transaction:
        entry = self.get(token)
        if entry is None:
            raise LedgerStateError(f"transaction not found: {token}")
        if entry.status == target:
            return entry
        if entry.status != TransactionStatus.PENDING:
            raise LedgerStateError(f"invalid transaction transition: {entry.status.value} -> {target.value}")

        current = as_utc_aware(now) if now else datetime.now(timezone.utc)
        patch: dict[str, Any] = {"status": target, **values}
        if target == TransactionStatus.COMPLETED:
            patch["completed_at"] = current
        result = self.session.execute(
            update(Transaction)
            .where(Transaction.id == entry.id, Transaction.status == TransactionStatus.PENDING)
            .values(**patch)
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            raise LedgerStateError(f"transaction transition conflict: {token}")
        self.session.refresh(entry)
        return entry

    def list_for_user(self, user_id: str, *, limit: int = 20, offset: int = 0) -> list[Transaction]:
        query = (
            select(Transaction)
            .where(Transaction.user_id == str(user_id))
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(max(1, min(int(limit), 50)))
            .offset(max(0, int(offset)))
        )
        return list(self.session.scalars(query).all())

    def count_for_user(self, user_id: str) -> int:
        count = self.session.scalar(
            select(func.count()).select_from(Transaction).where(Transaction.user_id == str(user_id))
        )
        return int(count or 0)

    def sum_for_user(self, user_id: str) -> Decimal:
        total = self.session.scalar(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.user_id == str(user_id),
                Transaction.status == TransactionStatus.COMPLETED,
                Transaction.transaction_type.in_(
                    [TransactionType.JEEZ_PURCHASE, TransactionType.JEEZ_SPEND, TransactionType.ADJUSTMENT]
                ),
            )
        )
        return Decimal(str(total or 0)).quantize(Decimal("0.01"))

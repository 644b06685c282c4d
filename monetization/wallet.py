from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Final, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from observability import get_logger, log_event

from . import results
from .db import is_transient_db_error
from .ledger import TransactionLedger, as_utc_aware
from .models import JeezBalance, PaymentMethod, Transaction, TransactionStatus, TransactionType
from .results import ServiceResult

_LOGGER = get_logger("jeezy.monetization.wallet")

MAX_CREDIT_AMOUNT: Final[Decimal] = Decimal("999999.99")
_CENT: Final[Decimal] = Decimal("0.01")
# Integer digits a jeez_balances.balance column can hold.
_MAX_DIGITS: Final[int] = 10
MAX_BALANCE_AMOUNT: Final[Decimal] = Decimal("9999999999.99")
_MAX_ATTEMPTS: Final[int] = 5


def generate_token(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(8)}"


def parse_amount(value: Any) -> Optional[Decimal]:
    """Parse a money amount; None when it is not a finite number with at most two decimals."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    if amount.adjusted() >= _MAX_DIGITS:
        # Beyond any storable balance; callers reject it by range.
        return amount
    quantized = amount.quantize(_CENT)
    if amount != quantized:
        return None
    return quantized


class WalletConflictError(RuntimeError):
    pass


class _TokenReplayed(Exception):
    def __init__(self, entry: Transaction) -> None:
        super().__init__(entry.transaction_id)
        self.entry = entry


class _WalletMissing(Exception):
    pass


class _InsufficientBalance(Exception):
    pass


@dataclass(frozen=True)
class BalanceSnapshot:
    user_id: str
    balance: Decimal
    last_updated: Optional[datetime] = None
    transaction_id: Optional[str] = None


class JeezWalletService:
    """
    Jeez balance mutations.

    Every credit or debit writes its ledger entry inside the same savepoint
    as the balance change, so a token either applies both or neither.
    """

    TOKEN_PREFIX: Final[str] = "jeez"

    def __init__(self, session: Session) -> None:
        self.session = session
        self.ledger = TransactionLedger(session)

    @classmethod
    def generate_token(cls) -> str:
        return generate_token(cls.TOKEN_PREFIX)

    def _snapshot(self, user_id: str, transaction_id: Optional[str] = None) -> Optional[BalanceSnapshot]:
        row = self.session.execute(
            select(JeezBalance.balance, JeezBalance.last_updated).where(JeezBalance.user_id == user_id)
        ).first()
        if row is None:
            return None
        balance = Decimal(str(row.balance if row.balance is not None else 0)).quantize(_CENT)
        last_updated = as_utc_aware(row.last_updated) if row.last_updated else None
        return BalanceSnapshot(
            user_id=user_id,
            balance=balance,
            last_updated=last_updated,
            transaction_id=transaction_id,
        )

    def _wallet_exists(self, user_id: str) -> bool:
        return self.session.scalar(select(JeezBalance.id).where(JeezBalance.user_id == user_id)) is not None

    def _ensure_wallet_row(self, user_id: str, now: datetime) -> None:
        if self._wallet_exists(user_id):
            return
        try:
            with self.session.begin_nested():
                self.session.add(
                    JeezBalance(user_id=user_id, balance=Decimal("0.00"), last_updated=now, created_at=now)
                )
                self.session.flush()
        except IntegrityError:
            if not self._wallet_exists(user_id):
                raise

    def create_wallet(self, user_id: str, *, now: Optional[datetime] = None) -> BalanceSnapshot:
        key = str(user_id or "").strip()
        current = as_utc_aware(now) if now else datetime.now(timezone.utc)
        self._ensure_wallet_row(key, current)
        snapshot = self._snapshot(key)
        if snapshot is None:
            raise WalletConflictError(f"wallet row missing after create for user={key}")
        return snapshot

    def get_balance(self, user_id: str) -> ServiceResult[BalanceSnapshot]:
        key = str(user_id or "").strip()
        snapshot = self._snapshot(key) if key else None
        if snapshot is None:
            return ServiceResult.fail(results.BALANCE_NOT_FOUND, "Wallet not found")
        return ServiceResult.ok(snapshot)

    def credit(
        self,
        user_id: str,
        amount: Any,
        token: str,
        reason: Optional[str] = None,
        *,
        order_id: Optional[str] = None,
        payment_method: PaymentMethod = PaymentMethod.PAYPAL,
        metadata: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult[BalanceSnapshot]:
        value = parse_amount(amount)
        if value is None or value <= 0:
            return ServiceResult.fail(results.INVALID_AMOUNT, "Amount must be positive")
        if value > MAX_CREDIT_AMOUNT:
            return ServiceResult.fail(results.AMOUNT_LIMIT_EXCEEDED, "Amount exceeds maximum limit")
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
                    self._ensure_wallet_row(key, current)
                    self.session.execute(
                        update(JeezBalance)
                        .where(JeezBalance.user_id == key)
                        .values(balance=JeezBalance.balance + value, last_updated=current)
                        .execution_options(synchronize_session=False)
                    )
                    write = self.ledger.record(
                        token=transaction_id,
                        user_id=key,
                        transaction_type=TransactionType.JEEZ_PURCHASE,
                        amount=value,
                        status=TransactionStatus.COMPLETED,
                        payment_method=payment_method,
                        description=reason or f"Jeez credit of {value}",
                        order_id=order_id,
                        metadata=metadata,
                        now=current,
                    )
                    if not write.applied:
                        raise _TokenReplayed(write.entry)
            except _TokenReplayed:
                log_event(_LOGGER, logging.INFO, "wallet.credit.replayed", user_id=key, transaction_id=transaction_id)
                snapshot = self._snapshot(key, transaction_id)
                if snapshot is None:
                    return ServiceResult.fail(results.BALANCE_NOT_FOUND, "Wallet not found")
                return ServiceResult.ok(snapshot, replayed=True)
            except OperationalError as exc:
                if is_transient_db_error(exc) and attempt < _MAX_ATTEMPTS - 1:
                    time.sleep(0.02 * (attempt + 1))
                    continue
                raise
            snapshot = self._snapshot(key, transaction_id)
            if snapshot is None:
                raise WalletConflictError(f"wallet row missing after credit for user={key}")
            log_event(
                _LOGGER,
                logging.INFO,
                "wallet.credit.applied",
                user_id=key,
                transaction_id=transaction_id,
                amount=value,
                balance=snapshot.balance,
                order_id=order_id,
            )
            return ServiceResult.ok(snapshot)
        raise WalletConflictError(f"wallet credit conflict for user={key}")

    def debit(
        self,
        user_id: str,
        amount: Any,
        token: str,
        reason: Optional[str] = None,
        *,
        metadata: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult[BalanceSnapshot]:
        value = parse_amount(amount)
        if value is None or value <= 0:
            return ServiceResult.fail(results.INVALID_AMOUNT, "Amount must be positive")
        key = str(user_id or "").strip()
        transaction_id = str(token or "").strip()
        if not key or not transaction_id:
            return ServiceResult.fail(results.INVALID_TOKEN, "user id and transaction token are required")
        if value > MAX_BALANCE_AMOUNT:
            # No stored balance can cover it.
            snapshot = self._snapshot(key)
            if snapshot is None:
                return ServiceResult.fail(results.BALANCE_NOT_FOUND, "Wallet not found")
            return ServiceResult.fail(results.INSUFFICIENT_BALANCE, "Insufficient balance", balance=snapshot.balance)

        for attempt in range(_MAX_ATTEMPTS):
            current = as_utc_aware(now) if now else datetime.now(timezone.utc)
            try:
                with self.session.begin_nested():
                    existing = self.ledger.get(transaction_id)
                    if existing is not None:
                        raise _TokenReplayed(existing)
                    if not self._wallet_exists(key):
                        raise _WalletMissing()
                    # Conditional decrement: the row only changes when funds suffice.
                    result = self.session.execute(
                        update(JeezBalance)
                        .where(JeezBalance.user_id == key, JeezBalance.balance >= value)
                        .values(balance=JeezBalance.balance - value, last_updated=current)
                        .execution_options(synchronize_session=False)
                    )
                    if int(result.rowcount or 0) != 1:
                        raise _InsufficientBalance()
                    write = self.ledger.record(
                        token=transaction_id,
                        user_id=key,
                        transaction_type=TransactionType.JEEZ_SPEND,
                        amount=-value,
                        status=TransactionStatus.COMPLETED,
                        payment_method=PaymentMethod.WALLET,
                        description=reason or f"Jeez spend of {value}",
                        metadata=metadata,
                        now=current,
                    )
                    if not write.applied:
                        raise _TokenReplayed(write.entry)
            except _TokenReplayed:
                log_event(_LOGGER, logging.INFO, "wallet.debit.replayed", user_id=key, transaction_id=transaction_id)
                snapshot = self._snapshot(key, transaction_id)
                if snapshot is None:
                    return ServiceResult.fail(results.BALANCE_NOT_FOUND, "Wallet not found")
                return ServiceResult.ok(snapshot, replayed=True)
            except _WalletMissing:
                return ServiceResult.fail(results.BALANCE_NOT_FOUND, "Wallet not found")
            except _InsufficientBalance:
                snapshot = self._snapshot(key)
                log_event(
                    _LOGGER,
                    logging.INFO,
                    "wallet.debit.insufficient",
                    user_id=key,
                    transaction_id=transaction_id,
                    amount=value,
                    balance=snapshot.balance if snapshot else None,
                )
                return ServiceResult.fail(
                    results.INSUFFICIENT_BALANCE,
                    "Insufficient balance",
                    balance=snapshot.balance if snapshot else None,
                )
            except OperationalError as exc:
                if is_transient_db_error(exc) and attempt < _MAX_ATTEMPTS - 1:
                    time.sleep(0.02 * (attempt + 1))
                    continue
                raise
            snapshot = self._snapshot(key, transaction_id)
            if snapshot is None:
                raise WalletConflictError(f"wallet row missing after debit for user={key}")
            log_event(
                _LOGGER,
                logging.INFO,
                "wallet.debit.applied",
                user_id=key,
                transaction_id=transaction_id,
                amount=value,
                balance=snapshot.balance,
            )
            return ServiceResult.ok(snapshot)
        raise WalletConflictError(f"wallet debit conflict for user={key}")

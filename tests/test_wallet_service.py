from __future__ import annotations

from decimal import Decimal

from monetization import (
    Base,
    JeezWalletService,
    PaymentMethod,
    TransactionLedger,
    TransactionStatus,
    TransactionType,
    User,
    build_session_factory,
    session_scope,
)
from monetization.wallet import parse_amount


def _make_db():
    engine, session_factory = build_session_factory("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    return engine, session_factory


def _make_user(sf, user_id: str) -> None:
    with session_scope(sf) as session:
        session.add(User(id=user_id, email=f"{user_id}@example.com"))
        JeezWalletService(session).create_wallet(user_id)


def _balance(sf, user_id: str) -> Decimal:
    with session_scope(sf) as session:
        result = JeezWalletService(session).get_balance(user_id)
        assert result.success, result.error
        return result.data.balance


def test_credit_is_idempotent_per_token() -> None:
    engine, sf = _make_db()
    _make_user(sf, "alice")

    with session_scope(sf) as session:
        first = JeezWalletService(session).credit("alice", "100", "jeez_credit_1", "PayPal purchase")
    assert first.success is True
    assert first.replayed is False
    assert first.data.balance == Decimal("100.00")
    assert first.data.transaction_id == "jeez_credit_1"

    with session_scope(sf) as session:
        replay = JeezWalletService(session).credit("alice", "100", "jeez_credit_1", "PayPal purchase")
    assert replay.success is True
    assert replay.replayed is True
    assert replay.data.balance == Decimal("100.00")
    assert _balance(sf, "alice") == Decimal("100.00")

    with session_scope(sf) as session:
        ledger = TransactionLedger(session)
        assert ledger.count_for_user("alice") == 1
        entry = ledger.get("jeez_credit_1")
        assert entry.transaction_type == TransactionType.JEEZ_PURCHASE
        assert entry.status == TransactionStatus.COMPLETED
        assert entry.payment_method == PaymentMethod.PAYPAL

    engine.dispose()


def test_credit_creates_missing_wallet() -> None:
    engine, sf = _make_db()
    with session_scope(sf) as session:
        session.add(User(id="walletless", email="walletless@example.com"))

    with session_scope(sf) as session:
        result = JeezWalletService(session).credit("walletless", Decimal("12.50"), "jeez_first")
    assert result.success is True
    assert _balance(sf, "walletless") == Decimal("12.50")
    engine.dispose()


def test_credit_rejects_invalid_amounts() -> None:
    engine, sf = _make_db()
    _make_user(sf, "bob")

    with session_scope(sf) as session:
        wallet = JeezWalletService(session)
        for amount in (0, -5, "abc", None, True, "1.005", float("nan"), float("inf")):
            result = wallet.credit("bob", amount, f"tok-{amount!r}")
            assert result.success is False, amount
            assert result.code == "INVALID_AMOUNT", amount

        too_big = wallet.credit("bob", "1000000.00", "tok-big")
        assert too_big.success is False
        assert too_big.code == "AMOUNT_LIMIT_EXCEEDED"

        at_limit = wallet.credit("bob", "999999.99", "tok-limit")
        assert at_limit.success is True

        missing_token = wallet.credit("bob", "1", "   ")
        assert missing_token.code == "INVALID_TOKEN"

    with session_scope(sf) as session:
        assert TransactionLedger(session).count_for_user("bob") == 1

    engine.dispose()


def test_debit_insufficient_balance_leaves_state_untouched() -> None:
    engine, sf = _make_db()
    _make_user(sf, "carol")

    with session_scope(sf) as session:
        JeezWalletService(session).credit("carol", "30", "seed")

    with session_scope(sf) as session:
        result = JeezWalletService(session).debit("carol", "50", "spend-too-much")
    assert result.success is False
    assert result.code == "INSUFFICIENT_BALANCE"
    assert result.extra["balance"] == Decimal("30.00")
    assert _balance(sf, "carol") == Decimal("30.00")

    with session_scope(sf) as session:
        assert TransactionLedger(session).get("spend-too-much") is None

    engine.dispose()


def test_debit_records_negative_spend_and_replays() -> None:
    engine, sf = _make_db()
    _make_user(sf, "dave")

    with session_scope(sf) as session:
        JeezWalletService(session).credit("dave", "100", "seed")

    with session_scope(sf) as session:
        spent = JeezWalletService(session).debit("dave", "40", "spend-1", "Tip to creator")
    assert spent.success is True
    assert spent.data.balance == Decimal("60.00")

    with session_scope(sf) as session:
        replay = JeezWalletService(session).debit("dave", "40", "spend-1", "Tip to creator")
    assert replay.success is True
    assert replay.replayed is True
    assert _balance(sf, "dave") == Decimal("60.00")

    with session_scope(sf) as session:
        ledger = TransactionLedger(session)
        entry = ledger.get("spend-1")
        assert entry.transaction_type == TransactionType.JEEZ_SPEND
        assert Decimal(str(entry.amount)) == Decimal("-40.00")
        assert entry.payment_method == PaymentMethod.WALLET
        assert ledger.sum_for_user("dave") == Decimal("60.00")

    engine.dispose()


def test_debit_exact_balance_reaches_zero() -> None:
    engine, sf = _make_db()
    _make_user(sf, "erin")
    with session_scope(sf) as session:
        JeezWalletService(session).credit("erin", "25.50", "seed")
    with session_scope(sf) as session:
        result = JeezWalletService(session).debit("erin", "25.50", "spend-all")
    assert result.success is True
    assert result.data.balance == Decimal("0.00")
    engine.dispose()


def test_debit_without_wallet_is_not_found() -> None:
    engine, sf = _make_db()
    with session_scope(sf) as session:
        result = JeezWalletService(session).debit("ghost", "1", "spend-ghost")
        missing = JeezWalletService(session).get_balance("ghost")
    assert result.code == "BALANCE_NOT_FOUND"
    assert missing.code == "BALANCE_NOT_FOUND"
    engine.dispose()


def test_huge_amounts_are_rejected_as_values() -> None:
    engine, sf = _make_db()
    _make_user(sf, "dave")

    with session_scope(sf) as session:
        wallet = JeezWalletService(session)
        wallet.credit("dave", "25", "seed-dave")
        for amount in ("1e30", "12345678901234567890123456789.5", Decimal("9" * 40)):
            credit = wallet.credit("dave", amount, f"big-credit-{amount}")
            assert credit.success is False, amount
            assert credit.code == "AMOUNT_LIMIT_EXCEEDED", amount

            debit = wallet.debit("dave", amount, f"big-debit-{amount}")
            assert debit.success is False, amount
            assert debit.code == "INSUFFICIENT_BALANCE", amount
            assert debit.extra["balance"] == Decimal("25.00")

        assert wallet.credit("dave", "-1e30", "neg-credit").code == "INVALID_AMOUNT"
        assert wallet.debit("ghost", "1e30", "ghost-debit").code == "BALANCE_NOT_FOUND"

    assert _balance(sf, "dave") == Decimal("25.00")
    with session_scope(sf) as session:
        assert TransactionLedger(session).count_for_user("dave") == 1

    engine.dispose()


def test_parse_amount_accepts_two_decimal_places() -> None:
    assert parse_amount("10") == Decimal("10.00")
    assert parse_amount(4.5) == Decimal("4.50")
    assert parse_amount(" 7.25 ") == Decimal("7.25")
    assert parse_amount("7.255") is None
    assert parse_amount(False) is None
    assert parse_amount("1e30") == Decimal("1e30")
    assert parse_amount("-Infinity") is None


def test_generated_tokens_are_prefixed_and_unique() -> None:
    tokens = {JeezWalletService.generate_token() for _ in range(50)}
    assert len(tokens) == 50
    assert all(token.startswith("jeez_") for token in tokens)

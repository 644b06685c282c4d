from .accounts import AccountService
from .db import Database, apply_transaction_timeouts, build_session_factory, session_scope
from .ledger import LedgerStateError, LedgerWrite, TransactionLedger
from .models import (
    Base,
    JeezBalance,
    OrderStatus,
    PaymentMethod,
    PayPalOrder,
    PlanType,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
    UserRole,
    VIPSubscription,
    WebhookAuditLog,
)
from .notifications import PurchaseReceipt, ResendEmailSender
from .orders import CheckoutService, OrderStateError, OrderView, PayPalOrderRepository
from .paypal import (
    PayPalClient,
    PayPalConfigError,
    PayPalError,
    PayPalRejectedError,
    PayPalTransientError,
)
from .pricing import DEFAULT_PRICE_TABLE, PriceTable, ProductInfo, ProductPrice, classify_product
from .results import ServiceResult
from .subscription import VIPActivation, VIPStatus, VIPSubscriptionService, add_months
from .verification import ParsedWebhook, PaymentVerificationError, PaymentVerificationService
from .wallet import BalanceSnapshot, JeezWalletService, WalletConflictError
from .webhook import ReconcileState, WebhookApplyError, WebhookOutcome, WebhookReconciler

__all__ = [
    "AccountService",
    "Database",
    "apply_transaction_timeouts",
    "build_session_factory",
    "session_scope",
    "LedgerStateError",
    "LedgerWrite",
    "TransactionLedger",
    "Base",
    "JeezBalance",
    "OrderStatus",
    "PaymentMethod",
    "PayPalOrder",
    "PlanType",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "User",
    "UserRole",
    "VIPSubscription",
    "WebhookAuditLog",
    "PurchaseReceipt",
    "ResendEmailSender",
    "CheckoutService",
    "OrderStateError",
    "OrderView",
    "PayPalOrderRepository",
    "PayPalClient",
    "PayPalConfigError",
    "PayPalError",
    "PayPalRejectedError",
    "PayPalTransientError",
    "DEFAULT_PRICE_TABLE",
    "PriceTable",
    "ProductInfo",
    "ProductPrice",
    "classify_product",
    "ServiceResult",
    "VIPActivation",
    "VIPStatus",
    "VIPSubscriptionService",
    "add_months",
    "ParsedWebhook",
    "PaymentVerificationError",
    "PaymentVerificationService",
    "BalanceSnapshot",
    "JeezWalletService",
    "WalletConflictError",
    "ReconcileState",
    "WebhookApplyError",
    "WebhookOutcome",
    "WebhookReconciler",
]

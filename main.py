from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from auth import (
    AuthenticatedPrincipal,
    AuthError,
    decode_access_token,
    extract_request_token,
    issue_access_token,
)
from config import (
    ADMIN_BOOTSTRAP_EMAIL,
    ADMIN_BOOTSTRAP_PASSWORD,
    API_HOST,
    API_PORT,
    APP_VERSION,
    AUTH_COOKIE_NAME,
    AUTH_COOKIE_SECURE,
    AUTH_TOKEN_SECRET,
    AUTH_TOKEN_TTL_SECONDS,
    CORS_ORIGINS,
    DATABASE_ECHO,
    DATABASE_URL,
    EMAIL_FROM,
    EMAIL_TIMEOUT_SECONDS,
    LOG_LEVEL,
    PAYPAL_API_BASE_URL,
    PAYPAL_BRAND_NAME,
    PAYPAL_CANCEL_URL,
    PAYPAL_CERT_TIMEOUT_SECONDS,
    PAYPAL_CLIENT_ID,
    PAYPAL_CLIENT_SECRET,
    PAYPAL_RETURN_URL,
    PAYPAL_TIMEOUT_SECONDS,
    PAYPAL_WEBHOOK_ID,
    RECONCILE_LOCK_TIMEOUT_MS,
    RECONCILE_STATEMENT_TIMEOUT_MS,
    RESEND_API_BASE_URL,
    RESEND_API_KEY,
    STARTUP_BOOTSTRAP_ENABLED,
)
from errors import ERROR_CODE_MAP, explain_error, http_status_for
from monetization import (
    DEFAULT_PRICE_TABLE,
    AccountService,
    BalanceSnapshot,
    CheckoutService,
    Database,
    JeezWalletService,
    OrderView,
    PaymentMethod,
    PaymentVerificationService,
    PayPalClient,
    PayPalOrderRepository,
    ResendEmailSender,
    ServiceResult,
    TransactionLedger,
    User,
    UserRole,
    VIPActivation,
    VIPStatus,
    VIPSubscriptionService,
    WebhookReconciler,
)
from monetization.ledger import decode_metadata
from monetization.results import USER_NOT_FOUND
from observability import configure_json_logging, get_logger, log_event, resolve_log_level

APP_LOGGER = get_logger("jeezy.api")

PRICE_TABLE = DEFAULT_PRICE_TABLE
MAX_PAGE_SIZE = 50


def build_database() -> Database:
    return Database(DATABASE_URL, echo=DATABASE_ECHO)


def build_paypal_client() -> PayPalClient:
    return PayPalClient(
        client_id=PAYPAL_CLIENT_ID,
        client_secret=PAYPAL_CLIENT_SECRET,
        base_url=PAYPAL_API_BASE_URL,
        timeout_seconds=PAYPAL_TIMEOUT_SECONDS,
        brand_name=PAYPAL_BRAND_NAME,
    )


def build_verifier() -> PaymentVerificationService:
    return PaymentVerificationService(PAYPAL_WEBHOOK_ID, cert_timeout_seconds=PAYPAL_CERT_TIMEOUT_SECONDS)


def build_email_sender() -> ResendEmailSender:
    return ResendEmailSender(
        api_key=RESEND_API_KEY,
        sender=EMAIL_FROM,
        base_url=RESEND_API_BASE_URL,
        timeout_seconds=EMAIL_TIMEOUT_SECONDS,
    )


def init_database(database: Database) -> None:
    database.upgrade_schema()


def _bootstrap_admin_user(database: Database) -> None:
    if not ADMIN_BOOTSTRAP_EMAIL or not ADMIN_BOOTSTRAP_PASSWORD:
        return
    with database.session() as session:
        user = AccountService(session).ensure_admin(email=ADMIN_BOOTSTRAP_EMAIL, password=ADMIN_BOOTSTRAP_PASSWORD)
        if user is not None:
            log_event(APP_LOGGER, logging.INFO, "auth.admin_bootstrapped", user_id=user.id)


@asynccontextmanager
async def lifespan(app_: FastAPI):
    configure_json_logging(level=resolve_log_level(LOG_LEVEL))
    if not AUTH_TOKEN_SECRET:
        raise RuntimeError("AUTH_TOKEN_SECRET is required")
    database = build_database().open()
    paypal = build_paypal_client()
    email_sender = build_email_sender()
    try:
        if STARTUP_BOOTSTRAP_ENABLED:
            init_database(database)
        _bootstrap_admin_user(database)
        app_.state.database = database
        app_.state.checkout = CheckoutService(
            database,
            paypal,
            PRICE_TABLE,
            return_url=PAYPAL_RETURN_URL,
            cancel_url=PAYPAL_CANCEL_URL,
        )
        app_.state.reconciler = WebhookReconciler(
            database,
            build_verifier(),
            PRICE_TABLE,
            email_sender=email_sender,
            lock_timeout_ms=RECONCILE_LOCK_TIMEOUT_MS,
            statement_timeout_ms=RECONCILE_STATEMENT_TIMEOUT_MS,
        )
        log_event(APP_LOGGER, logging.INFO, "app.started", version=APP_VERSION, paypal_configured=paypal.configured)
        yield
    finally:
        paypal.close()
        email_sender.close()
        database.close()


app = FastAPI(title="Jeezy Monetization", version=APP_VERSION, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Trace-Id"],
    expose_headers=["X-Trace-Id"],
)


def _request_trace_id(request: Request) -> str:
    raw = str(getattr(request.state, "trace_id", "") or "").strip()
    if raw:
        return raw
    return uuid.uuid4().hex


def _request_user_id(request: Request) -> str:
    principal = getattr(request.state, "principal", None)
    if isinstance(principal, AuthenticatedPrincipal):
        return principal.user_id
    return "anonymous"


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    trace_id = str(request.headers.get("X-Trace-Id") or uuid.uuid4().hex).strip()[:64]
    request.state.trace_id = trace_id
    started = time.perf_counter()
    response = await call_next(request)
    log_event(
        APP_LOGGER,
        logging.INFO,
        "request.completed",
        trace_id=trace_id,
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=int((time.perf_counter() - started) * 1000),
        user_id=_request_user_id(request),
    )
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    trace_id = _request_trace_id(request)
    log_event(
        APP_LOGGER,
        logging.ERROR,
        "request.unhandled_exception",
        trace_id=trace_id,
        user_id=_request_user_id(request),
        method=request.method,
        path=request.url.path,
        exception_type=type(exc).__name__,
        exception_message=str(exc),
    )
    return JSONResponse(
        status_code=500,
        content={
            "error_code": "INTERNAL_SERVER_ERROR",
            "message": "internal server error",
            "trace_id": trace_id,
        },
        headers={"X-Trace-Id": trace_id},
    )


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_current_principal(request: Request) -> AuthenticatedPrincipal:
    try:
        token = extract_request_token(request.headers.get("Authorization"), request.cookies, AUTH_COOKIE_NAME)
        principal = decode_access_token(token, AUTH_TOKEN_SECRET)
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    request.state.principal = principal
    return principal


def require_admin(
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    database: Database = Depends(get_database),
) -> AuthenticatedPrincipal:
    # The token role may be stale; the stored role decides.
    with database.session() as session:
        user = session.get(User, principal.user_id)
        is_admin = user is not None and user.active and user.role == UserRole.ADMIN
    if not is_admin:
        raise HTTPException(status_code=403, detail="admin role required")
    return principal


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _money(value: Optional[Decimal]) -> Optional[str]:
    return format(value, "f") if value is not None else None


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def _balance_payload(snapshot: BalanceSnapshot) -> Dict[str, Any]:
    return {
        "user_id": snapshot.user_id,
        "balance": _money(snapshot.balance),
        "last_updated": _iso(snapshot.last_updated),
        "transaction_id": snapshot.transaction_id,
    }


def _vip_status_payload(status: VIPStatus) -> Dict[str, Any]:
    return {
        "user_id": status.user_id,
        "is_active": status.is_active,
        "plan_type": _enum_value(status.plan_type),
        "start_date": _iso(status.start_date),
        "expires_at": _iso(status.expires_at),
        "auto_renew": status.auto_renew,
        "subscription_id": status.subscription_id,
    }


def _activation_payload(activation: VIPActivation) -> Dict[str, Any]:
    return {
        "user_id": activation.user_id,
        "subscription_id": activation.subscription_id,
        "plan_type": _enum_value(activation.plan_type),
        "expires_at": _iso(activation.expires_at),
        "transaction_id": activation.transaction_id,
    }


def _order_payload(view: OrderView) -> Dict[str, Any]:
    return {
        "id": view.id,
        "order_id": view.order_id,
        "product_id": view.product_id,
        "amount": _money(view.amount),
        "currency": view.currency,
        "status": _enum_value(view.status),
        "approve_url": view.approve_url,
        "webhook_verified": view.webhook_verified,
        "created_at": _iso(view.created_at),
        "completed_at": _iso(view.completed_at),
    }


def _result_response(result: ServiceResult[Any], data: Any = None) -> JSONResponse:
    if result.success:
        return JSONResponse(status_code=200, content={"success": True, "data": data, "replayed": result.replayed})
    content: Dict[str, Any] = {"success": False, "error": result.error, "code": result.code}
    info = explain_error(result.code)
    if info is not None:
        content["hint"] = info.get("hint")
    if result.extra:
        content["details"] = {key: _money(value) if isinstance(value, Decimal) else value for key, value in result.extra.items()}
    return JSONResponse(status_code=http_status_for(result.code), content=content)


class AuthRegisterRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=8, max_length=256)
    name: Optional[str] = Field(default=None, max_length=120)

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value: Any) -> str:
        return str(value or "").strip().lower()


class AuthLoginRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=320)
    password: str = Field(..., min_length=1, max_length=256)

    @field_validator("password", mode="before")
    @classmethod
    def _normalize_password(cls, value: Any) -> str:
        return str(value or "")


class AuthUserInfo(BaseModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    role: str


class AuthTokenResponse(BaseModel):
    access_token: str
    token_type: str
    expires_in: int
    user: AuthUserInfo


class WalletCreditRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    amount: Union[Decimal, str]
    transaction_id: Optional[str] = Field(default=None, max_length=128)
    reason: Optional[str] = Field(default=None, max_length=500)


class WalletDebitRequest(BaseModel):
    amount: Union[Decimal, str]
    transaction_id: Optional[str] = Field(default=None, max_length=128)
    reason: Optional[str] = Field(default=None, max_length=500)


class VIPActivateRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    plan_type: str = Field(..., min_length=1, max_length=32)
    transaction_id: Optional[str] = Field(default=None, max_length=128)
    order_id: Optional[str] = Field(default=None, max_length=128)


class AutoRenewRequest(BaseModel):
    enabled: bool


class CreateOrderRequest(BaseModel):
    product_id: str = Field(..., min_length=1, max_length=64)
    order_ref: Optional[str] = Field(default=None, max_length=64)

    @field_validator("product_id", mode="before")
    @classmethod
    def _normalize_product_id(cls, value: Any) -> str:
        return str(value or "").strip().lower()


def _token_response(user: User) -> AuthTokenResponse:
    principal = AuthenticatedPrincipal(user_id=user.id, role=_enum_value(user.role), email=user.email)
    token = issue_access_token(principal, AUTH_TOKEN_SECRET, AUTH_TOKEN_TTL_SECONDS)
    return AuthTokenResponse(
        access_token=token,
        token_type="bearer",  # nosec B106
        expires_in=AUTH_TOKEN_TTL_SECONDS,
        user=AuthUserInfo(id=user.id, email=user.email, name=user.name, role=_enum_value(user.role)),
    )


def _set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        AUTH_COOKIE_NAME,
        token,
        max_age=AUTH_TOKEN_TTL_SECONDS,
        httponly=True,
        secure=AUTH_COOKIE_SECURE,
        samesite="lax",
    )


@app.get("/health")
def health(database: Database = Depends(get_database)) -> dict:
    db_ok = database.ping()
    return {"status": "ok" if db_ok else "degraded", "db": "ok" if db_ok else "error", "version": APP_VERSION}


@app.get("/error-codes")
async def error_codes() -> Dict[str, Dict[str, str]]:
    return ERROR_CODE_MAP


@app.post("/auth/register", response_model=AuthTokenResponse)
def auth_register(
    payload: AuthRegisterRequest,
    response: Response,
    database: Database = Depends(get_database),
) -> AuthTokenResponse:
    with database.session() as session:
        result = AccountService(session).register(email=payload.email, password=payload.password, name=payload.name)
        if not result.success or result.data is None:
            raise HTTPException(status_code=http_status_for(result.code), detail=result.error)
        token_response = _token_response(result.data)
    _set_session_cookie(response, token_response.access_token)
    return token_response


@app.post("/auth/login", response_model=AuthTokenResponse)
def auth_login(
    payload: AuthLoginRequest,
    response: Response,
    database: Database = Depends(get_database),
) -> AuthTokenResponse:
    with database.session() as session:
        result = AccountService(session).authenticate(payload.email, payload.password)
        if not result.success or result.data is None:
            log_event(APP_LOGGER, logging.WARNING, "auth.login.failed", email=payload.email)
            raise HTTPException(status_code=401, detail="invalid email or password")
        token_response = _token_response(result.data)
    _set_session_cookie(response, token_response.access_token)
    return token_response


@app.get("/wallet/balance")
def wallet_balance(
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    database: Database = Depends(get_database),
) -> JSONResponse:
    with database.session() as session:
        result = JeezWalletService(session).get_balance(principal.user_id)
    return _result_response(result, _balance_payload(result.data) if result.data else None)


@app.post("/wallet/credit")
def wallet_credit(
    payload: WalletCreditRequest,
    principal: AuthenticatedPrincipal = Depends(require_admin),
    database: Database = Depends(get_database),
) -> JSONResponse:
    token = str(payload.transaction_id or "").strip() or JeezWalletService.generate_token()
    with database.session() as session:
        if AccountService(session).get_user(payload.user_id) is None:
            return _result_response(ServiceResult.fail(USER_NOT_FOUND, "User not found"))
        result = JeezWalletService(session).credit(
            payload.user_id,
            payload.amount,
            token,
            payload.reason or "Manual adjustment",
            payment_method=PaymentMethod.WALLET,
            metadata={"granted_by": principal.user_id},
        )
    return _result_response(result, _balance_payload(result.data) if result.data else None)


@app.post("/wallet/debit")
def wallet_debit(
    payload: WalletDebitRequest,
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    database: Database = Depends(get_database),
) -> JSONResponse:
    token = str(payload.transaction_id or "").strip() or JeezWalletService.generate_token()
    with database.session() as session:
        result = JeezWalletService(session).debit(principal.user_id, payload.amount, token, payload.reason)
    return _result_response(result, _balance_payload(result.data) if result.data else None)


@app.get("/wallet/transactions")
def wallet_transactions(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=MAX_PAGE_SIZE),
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    database: Database = Depends(get_database),
) -> JSONResponse:
    with database.session() as session:
        ledger = TransactionLedger(session)
        entries = ledger.list_for_user(principal.user_id, limit=limit, offset=(page - 1) * limit)
        total = ledger.count_for_user(principal.user_id)
        order_ids = [entry.order_id for entry in entries if entry.order_id]
        order_status = PayPalOrderRepository(session).status_by_provider_ids(order_ids) if order_ids else {}
        items: List[Dict[str, Any]] = [
            {
                "transaction_id": entry.transaction_id,
                "type": _enum_value(entry.transaction_type),
                "amount": _money(Decimal(str(entry.amount))),
                "status": _enum_value(entry.status),
                "payment_method": _enum_value(entry.payment_method),
                "description": entry.description,
                "order_id": entry.order_id,
                "order_status": _enum_value(order_status.get(entry.order_id)) if entry.order_id else None,
                "metadata": decode_metadata(entry.meta_json),
                "created_at": _iso(entry.created_at),
                "completed_at": _iso(entry.completed_at),
            }
            for entry in entries
        ]
    total_pages = (total + limit - 1) // limit
    return JSONResponse(
        status_code=200,
        content={
            "success": True,
            "data": {
                "transactions": items,
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "total_pages": total_pages,
                    "has_more": page < total_pages,
                },
            },
        },
    )


@app.get("/vip/status")
def vip_status(
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    database: Database = Depends(get_database),
) -> JSONResponse:
    with database.session() as session:
        result = VIPSubscriptionService(session).get_status(principal.user_id)
    return _result_response(result, _vip_status_payload(result.data) if result.data else None)


@app.post("/vip/activate")
def vip_activate(
    payload: VIPActivateRequest,
    principal: AuthenticatedPrincipal = Depends(require_admin),
    database: Database = Depends(get_database),
) -> JSONResponse:
    token = str(payload.transaction_id or "").strip() or VIPSubscriptionService.generate_token()
    with database.session() as session:
        result = VIPSubscriptionService(session).activate(
            payload.user_id,
            payload.plan_type,
            token,
            payload.order_id,
            payment_method=PaymentMethod.WALLET,
        )
    if result.success:
        log_event(APP_LOGGER, logging.INFO, "vip.activate.manual", user_id=payload.user_id, granted_by=principal.user_id)
    return _result_response(result, _activation_payload(result.data) if result.data else None)


@app.post("/vip/cancel")
def vip_cancel(
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    database: Database = Depends(get_database),
) -> JSONResponse:
    with database.session() as session:
        result = VIPSubscriptionService(session).deactivate(principal.user_id)
    return _result_response(result, _vip_status_payload(result.data) if result.data else None)


@app.post("/vip/auto-renew")
def vip_auto_renew(
    payload: AutoRenewRequest,
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    database: Database = Depends(get_database),
) -> JSONResponse:
    with database.session() as session:
        result = VIPSubscriptionService(session).set_auto_renew(principal.user_id, payload.enabled)
    return _result_response(result, _vip_status_payload(result.data) if result.data else None)


@app.post("/payment/orders")
async def payment_create_order(
    payload: CreateOrderRequest,
    request: Request,
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
) -> JSONResponse:
    checkout: CheckoutService = request.app.state.checkout
    result = await asyncio.to_thread(
        checkout.create_order, principal.user_id, payload.product_id, order_ref=payload.order_ref
    )
    return _result_response(result, _order_payload(result.data) if result.data else None)


@app.get("/payment/orders/{order_id}")
def payment_get_order(
    order_id: str,
    request: Request,
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
) -> JSONResponse:
    checkout: CheckoutService = request.app.state.checkout
    result = checkout.get_order(principal.user_id, order_id)
    return _result_response(result, _order_payload(result.data) if result.data else None)


@app.post("/payment/orders/{order_id}/capture")
async def payment_capture_order(
    order_id: str,
    request: Request,
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
) -> JSONResponse:
    checkout: CheckoutService = request.app.state.checkout
    result = await asyncio.to_thread(checkout.capture_order, principal.user_id, order_id)
    return _result_response(result, _order_payload(result.data) if result.data else None)


@app.post("/webhooks/paypal")
async def paypal_webhook(request: Request) -> JSONResponse:
    raw_body = await request.body()
    reconciler: WebhookReconciler = request.app.state.reconciler
    outcome = await asyncio.to_thread(reconciler.handle, raw_body, dict(request.headers))
    return JSONResponse(status_code=outcome.http_status, content=outcome.body)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=API_HOST, port=API_PORT)

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auth import hash_password_bcrypt, verify_password_hash
from observability import get_logger, log_event

from . import results
from .ledger import as_utc_aware
from .models import User, UserRole
from .results import ServiceResult
from .wallet import JeezWalletService

_LOGGER = get_logger("jeezy.monetization.accounts")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_user(self, user_id: str) -> Optional[User]:
        key = str(user_id or "").strip()
        if not key:
            return None
        return self.session.get(User, key)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        return self.session.scalar(select(User).where(User.email == normalized))

    def register(
        self,
        *,
        email: str,
        password: str,
        name: Optional[str] = None,
        role: UserRole = UserRole.USER,
        now: Optional[datetime] = None,
    ) -> ServiceResult[User]:
        """Create a user together with an empty wallet."""
        normalized = normalize_email(email)
        if not _EMAIL_RE.fullmatch(normalized):
            return ServiceResult.fail(results.INVALID_PAYLOAD, "A valid email is required")
        if len(str(password or "")) < 8:
            return ServiceResult.fail(results.INVALID_PAYLOAD, "Password must be at least 8 characters")
        if self.get_user_by_email(normalized) is not None:
            return ServiceResult.fail(results.EMAIL_TAKEN, "Email already registered")

        current = as_utc_aware(now) if now else datetime.now(timezone.utc)
        user = User(
            email=normalized,
            name=str(name or "").strip() or None,
            password_hash=hash_password_bcrypt(password),
            role=role,
            active=True,
            created_at=current,
            updated_at=current,
        )
        try:
            with self.session.begin_nested():
                self.session.add(user)
                self.session.flush()
        except IntegrityError:
            return ServiceResult.fail(results.EMAIL_TAKEN, "Email already registered")
        JeezWalletService(self.session).create_wallet(user.id, now=current)
        log_event(_LOGGER, logging.INFO, "account.registered", user_id=user.id, role=role)
        return ServiceResult.ok(user)

    def authenticate(self, email: str, password: str, *, now: Optional[datetime] = None) -> ServiceResult[User]:
        user = self.get_user_by_email(email)
        if user is None or not user.active or not verify_password_hash(password, user.password_hash or ""):
            return ServiceResult.fail(results.INVALID_CREDENTIALS, "Invalid email or password")
        user.last_login_at = as_utc_aware(now) if now else datetime.now(timezone.utc)
        self.session.flush()
        return ServiceResult.ok(user)

    def ensure_admin(self, *, email: str, password: str) -> Optional[User]:
        normalized = normalize_email(email)
        if not normalized or not password:
            return None
        existing = self.get_user_by_email(normalized)
        if existing is not None:
            if existing.role != UserRole.ADMIN:
                existing.role = UserRole.ADMIN
                self.session.flush()
            return existing
        created = self.register(email=normalized, password=password, name="admin", role=UserRole.ADMIN)
        return created.data

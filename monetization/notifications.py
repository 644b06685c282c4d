from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol

import httpx

from observability import get_logger, log_event

_LOGGER = get_logger("jeezy.monetization.notifications")


class EmailSender(Protocol):
    def send(self, *, to: str, subject: str, html_body: str) -> bool: ...


@dataclass(frozen=True)
class PurchaseReceipt:
    to: str
    order_id: str
    product_label: str
    amount: Decimal
    currency: str
    customer_name: Optional[str] = None

    def subject(self) -> str:
        return f"Your Jeezy purchase: {self.product_label}"

    def html_body(self) -> str:
        greeting = html.escape(self.customer_name or "there")
        return (
            f"<p>Hi {greeting},</p>"
            f"<p>Thanks for your purchase of <strong>{html.escape(self.product_label)}</strong>.</p>"
            f"<p>Amount: {format(self.amount, 'f')} {html.escape(self.currency)}<br/>"
            f"Order: {html.escape(self.order_id)}</p>"
        )


class ResendEmailSender:
    """Sends mail through the Resend HTTP API. Failures are logged and reported as False."""

    def __init__(
        self,
        *,
        api_key: str,
        sender: str,
        base_url: str = "https://api.resend.com",
        timeout_seconds: float = 10.0,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_key = str(api_key or "").strip()
        self.sender = str(sender or "").strip()
        self._client = http_client or httpx.Client(
            base_url=str(base_url or "").rstrip("/"),
            timeout=httpx.Timeout(float(timeout_seconds)),
            trust_env=False,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key and self.sender)

    def close(self) -> None:
        self._client.close()

    def send(self, *, to: str, subject: str, html_body: str) -> bool:
        recipient = str(to or "").strip()
        if not self.enabled or not recipient:
            log_event(_LOGGER, logging.INFO, "email.skipped", reason="disabled" if not self.enabled else "no_recipient")
            return False
        try:
            resp = self._client.post(
                "/emails",
                json={"from": self.sender, "to": [recipient], "subject": subject, "html": html_body},
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            log_event(_LOGGER, logging.WARNING, "email.send_failed", to=recipient, error=str(exc))
            return False
        log_event(_LOGGER, logging.INFO, "email.sent", to=recipient, subject=subject)
        return True


def send_purchase_receipt(sender: Optional[EmailSender], receipt: PurchaseReceipt) -> bool:
    if sender is None:
        return False
    try:
        return sender.send(to=receipt.to, subject=receipt.subject(), html_body=receipt.html_body())
    except Exception as exc:  # noqa: BLE001
        # Receipts run after commit; a mail failure never affects the purchase.
        log_event(_LOGGER, logging.WARNING, "email.receipt_failed", order_id=receipt.order_id, error=str(exc))
        return False

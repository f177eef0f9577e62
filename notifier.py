"""
Order notification emails sent through the Brevo transactional API.

``send_order_confirmation`` never raises: every failure, including the request
timeout, comes back as an unsuccessful NotificationResult.
"""
import html
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import requests
from pydantic import BaseModel

from config import EmailConfig
from errors import NotifierTimeoutError

logger = logging.getLogger("mousepad.notifier")


class NotificationResult(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    timed_out: bool = False


class Notifier:
    def send_order_confirmation(self, order: Dict[str, Any]) -> NotificationResult:
        raise NotImplementedError


def format_money(amount: Any, currency: str = "USD") -> str:
    return f"{currency} {float(amount or 0):,.2f}"


def format_address(address: Optional[Dict[str, Any]]) -> str:
    if not address:
        return "N/A"
    parts = [address.get(k) for k in ("street", "city", "state", "zipCode", "country")]
    return ", ".join(p for p in parts if p)


def format_date(value: Any) -> str:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return value
    if isinstance(value, datetime):
        return value.strftime("%B %d, %Y %I:%M %p")
    return "N/A"


def render_order_email(order: Dict[str, Any], store_name: str = "Mousepad Store") -> Tuple[str, str]:
    order_id = str(order.get("id") or order.get("_id") or "")
    currency = order.get("currency") or "USD"
    customer = order.get("customerInfo") or {}
    name = f"{customer.get('firstName', '')} {customer.get('lastName', '')}".strip() or "N/A"
    e = html.escape

    rows = []
    for item in order.get("items") or []:
        thickness = f"<div>Thickness: {e(str(item['thickness']))}</div>" if item.get("thickness") else ""
        rows.append(
            "<div class=\"item\">"
            f"<div class=\"item-name\">{e(str(item.get('name') or 'Custom Mousepad'))}</div>"
            f"<div>Quantity: {item.get('quantity') or 1}</div>"
            f"<div>Price: {format_money(item.get('price'), currency)}</div>"
            f"<div>Type: {e(str(item.get('mousepadType') or 'N/A'))}</div>"
            f"<div>Size: {e(str(item.get('mousepadSize') or 'N/A'))}</div>"
            f"{thickness}</div>"
        )
    items_html = "".join(rows) or "<p>No items in this order.</p>"
    notes = customer.get("additionalNotes")
    notes_html = f"<h3>Additional notes</h3><p>{e(notes)}</p>" if notes else ""

    body = (
        f"<html><body><h2>{e(store_name)}: new order received</h2>"
        f"<p>Order ID: {e(order_id or 'N/A')}<br>"
        f"Order date: {e(format_date(order.get('created_at')))}<br>"
        f"Status: {e(str(order.get('status') or 'pending'))}<br>"
        f"Payment: {e(str(order.get('paymentStatus') or 'pending'))}</p>"
        f"<h3>Customer</h3><p>{e(name)}<br>{e(customer.get('email') or 'N/A')}<br>"
        f"{e(customer.get('phone') or 'N/A')}<br>{e(format_address(customer.get('address')))}</p>"
        f"{notes_html}<h3>Items</h3>{items_html}"
        f"<p>Subtotal: {format_money(order.get('subtotal'), currency)}<br>"
        f"Shipping: {format_money(order.get('shipping'), currency)}<br>"
        f"Tax: {format_money(order.get('tax'), currency)}<br>"
        f"<strong>Total: {format_money(order.get('total'), currency)}</strong></p>"
        "</body></html>"
    )
    subject = f"New Order Received - Order #{order_id[-8:]}"
    return subject, body


class BrevoNotifier(Notifier):
    def __init__(self, config: EmailConfig, store_name: str = "Mousepad Store",
                 session: Optional[requests.Session] = None):
        self.config = config
        self.store_name = store_name
        self.session = session or requests.Session()

    def send_order_confirmation(self, order: Dict[str, Any]) -> NotificationResult:
        if not self.config.enabled:
            logger.info("Email service is disabled. Skipping email send.")
            return NotificationResult(success=False, error="Email service is disabled")
        if not self.config.api_key:
            logger.error("Brevo API key is not configured. Cannot send email.")
            return NotificationResult(success=False, error="Email API key not configured")

        subject, html_content = render_order_email(order, self.store_name)
        payload = {
            "sender": {"name": self.config.sender_name, "email": self.config.sender_email},
            "to": [{"email": self.config.admin_email}],
            "subject": subject,
            "htmlContent": html_content,
        }
        try:
            response = self.session.post(
                self.config.api_url,
                json=payload,
                headers={"api-key": self.config.api_key, "Content-Type": "application/json"},
                timeout=self.config.timeout,
            )
        except requests.Timeout:
            error = NotifierTimeoutError(f"Email API timed out after {self.config.timeout:g}s")
            logger.error("Error sending order confirmation email: %s", error.message)
            return NotificationResult(success=False, error=error.message, retryable=True, timed_out=True)
        except requests.RequestException as exc:
            logger.error("Error sending order confirmation email: %s", exc)
            return NotificationResult(
                success=False,
                error="No response from Brevo API. Please check your connection and try again.",
                retryable=True,
            )

        if response.status_code >= 400:
            error = self._describe_error(response)
            logger.error("Error sending order confirmation email: %s", error)
            return NotificationResult(
                success=False, error=error,
                retryable=response.status_code == 429 or response.status_code >= 500,
            )

        try:
            data = response.json()
        except ValueError:
            data = {}
        message_id = data.get("messageId") or data.get("id")
        logger.info("Order confirmation email sent successfully: %s", message_id or "Success")
        return NotificationResult(success=True, message_id=message_id)

    @staticmethod
    def _describe_error(response: requests.Response) -> str:
        try:
            detail = (response.json() or {}).get("message")
        except ValueError:
            detail = None
        status = response.status_code
        if status == 401:
            return f"Authentication failed (401): {detail or 'API key is invalid or not enabled'}"
        if status == 400:
            return f"Bad request (400): {detail or 'Invalid email data; check that the sender is verified'}"
        if status == 403:
            return f"Forbidden (403): {detail or 'API key does not have permission to send emails'}"
        return f"API error ({status}): {detail or response.reason}"

import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import resend
from flask import render_template

from helpers import money, safe_positive_int


def send_email_via_resend(payload: Dict[str, object], api_key: str):
    configured_api_key = (api_key or "").strip()
    if not configured_api_key:
        return False, "Resend API key is not configured."

    previous_api_key = getattr(resend, "api_key", None)
    resend.api_key = configured_api_key
    try:
        response = resend.Emails.send(payload)
    except Exception as exc:
        return False, str(exc)
    finally:
        resend.api_key = previous_api_key

    if not isinstance(response, dict) or not response.get("id"):
        return False, str(response)

    return True, None


def normalize_order_email_items(items: List[Dict]) -> List[Dict]:
    normalized_items: List[Dict] = []
    for entry in items or []:
        if not isinstance(entry, dict):
            continue
        quantity = safe_positive_int(entry.get("quantity"), 1) or 1
        price_value = money(entry.get("price"))
        normalized_items.append(
            {
                "title": str(entry.get("title") or "").strip() or "Item",
                "quantity": quantity,
                "price": price_value,
                "line_total": round(price_value * quantity, 2),
            }
        )
    return normalized_items


class OrderMailer:
    def __init__(self, api_key: str, sender: str, logger=None):
        self.api_key = (api_key or "").strip()
        self.sender = sender
        self.logger = logger or logging.getLogger(__name__)

    def send_order_confirmation(
        self, order_document: Dict[str, object], recipient_email: Optional[str]
    ) -> Tuple[bool, Optional[str]]:
        normalized_email = str(recipient_email or "").strip().lower()
        if not normalized_email:
            return False, "Missing customer email for the order receipt."
        if not self.api_key:
            return False, "Resend API key is not configured."

        order_number = str(order_document.get("order_number") or "").strip() or "Order"
        items = normalize_order_email_items(order_document.get("items"))
        currency_code = str(order_document.get("currency") or "JMD").upper()
        total_value = money(order_document.get("total_amount"))
        created_at_value = order_document.get("created_at")
        if not isinstance(created_at_value, datetime):
            created_at_value = datetime.utcnow()

        html_body = render_template(
            "emails/order_confirmation.html",
            order_number=order_number,
            items=items,
            subtotal=money(order_document.get("subtotal")),
            shipping_fee=money(order_document.get("shipping_fee")),
            total=total_value,
            currency=currency_code,
            created_at=created_at_value,
        )
        item_lines = ", ".join(
            f"{item['title']} x{item['quantity']} ({currency_code} {item['price']:.2f})"
            for item in items
        )
        text_body = (
            f"Thank you for your purchase! Order {order_number} on "
            f"{created_at_value.strftime('%Y-%m-%d %H:%M')}.\n"
            f"Items: {item_lines}.\n"
            f"Total: {currency_code} {total_value:.2f}.\n\n"
            "Harvest Market"
        )
        payload: Dict[str, object] = {
            "from": self.sender,
            "to": [normalized_email],
            "subject": f"Payment received for {order_number}",
            "html": html_body,
            "text": text_body,
        }

        sent, error = send_email_via_resend(payload, self.api_key)
        if not sent:
            self.logger.warning(
                "Order confirmation for %s not sent: %s", order_number, error
            )
        return sent, error

from typing import Dict, Optional

from bson import ObjectId

from helpers import isoformat, money, safe_positive_int
from shipping import normalize_address_payload


def _id_string(value) -> str:
    if isinstance(value, ObjectId):
        return str(value)
    return str(value or "").strip()


def serialize_address(payload: Optional[Dict]) -> Dict[str, str]:
    normalized = normalize_address_payload(payload)
    return {
        "street": normalized.get("street", ""),
        "city": normalized.get("city", ""),
        "parish": normalized.get("parish", ""),
        "postalCode": normalized.get("postal_code", ""),
    }


def serialize_order(order_document, include_history: bool = True):
    if not order_document:
        return None

    items = []
    for entry in order_document.get("items") or []:
        quantity = safe_positive_int(entry.get("quantity"), 1) or 1
        price_value = money(entry.get("price"))
        items.append(
            {
                "productId": _id_string(entry.get("product_id")),
                "title": entry.get("title") or "",
                "quantity": quantity,
                "price": price_value,
                "lineTotal": round(price_value * quantity, 2),
            }
        )

    serialized = {
        "id": _id_string(order_document.get("_id")),
        "orderNumber": order_document.get("order_number") or "",
        "buyerId": _id_string(order_document.get("buyer_id")),
        "sellerId": _id_string(order_document.get("seller_id")),
        "items": items,
        "subtotal": money(order_document.get("subtotal")),
        "shippingFee": money(order_document.get("shipping_fee")),
        "totalAmount": money(order_document.get("total_amount")),
        "currency": order_document.get("currency") or "JMD",
        "status": order_document.get("status") or "pending",
        "paymentStatus": order_document.get("payment_status") or "pending",
        "paymentMethod": order_document.get("payment_method") or "",
        "paymentGateway": order_document.get("payment_gateway") or "",
        "paymentReference": order_document.get("payment_reference") or None,
        "gatewayTransactionId": order_document.get("gateway_transaction_id") or None,
        "shippingAddress": serialize_address(order_document.get("shipping_address")),
        "deliveryOption": order_document.get("delivery_option") or "delivery",
        "notes": order_document.get("notes") or None,
        "stockReserved": bool(order_document.get("stock_reserved")),
        "estimatedDeliveryDate": isoformat(order_document.get("estimated_delivery_date")),
        "actualDeliveryDate": isoformat(order_document.get("actual_delivery_date")),
        "cancelledAt": isoformat(order_document.get("cancelled_at")),
        "paidAt": isoformat(order_document.get("paid_at")),
        "createdAt": isoformat(order_document.get("created_at")),
        "updatedAt": isoformat(order_document.get("updated_at")),
    }
    if include_history:
        serialized["statusHistory"] = [
            {
                "status": entry.get("status"),
                "timestamp": isoformat(entry.get("timestamp")),
                "updatedBy": _id_string(entry.get("updated_by")),
                "notes": entry.get("notes") or None,
            }
            for entry in order_document.get("status_history") or []
        ]
    return serialized


def serialize_transaction(transaction_document):
    if not transaction_document:
        return None
    metadata = transaction_document.get("metadata")
    return {
        "id": _id_string(transaction_document.get("_id")),
        "orderId": _id_string(transaction_document.get("order_id")),
        "amount": money(transaction_document.get("amount")),
        "currency": transaction_document.get("currency") or "JMD",
        "paymentGateway": transaction_document.get("payment_gateway") or "",
        "paymentReference": transaction_document.get("payment_reference") or "",
        "gatewayTransactionId": transaction_document.get("gateway_transaction_id") or None,
        "status": transaction_document.get("status") or "pending",
        "metadata": metadata if isinstance(metadata, dict) else {},
        "createdAt": isoformat(transaction_document.get("created_at")),
        "updatedAt": isoformat(transaction_document.get("updated_at")),
    }


def serialize_cart(cart_document):
    cart_document = cart_document or {}
    return {
        "items": [
            {
                "productId": _id_string(item.get("product_id")),
                "quantity": safe_positive_int(item.get("quantity"), 1),
                "price": money(item.get("price")),
            }
            for item in cart_document.get("items") or []
        ],
        "subtotal": money(cart_document.get("subtotal")),
        "itemCount": safe_positive_int(cart_document.get("item_count"), 0),
    }

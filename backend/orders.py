"""Order workflow: cart to order conversion, payment reconciliation, fulfillment.

MongoDB offers no transaction across the order, product, cart and transaction
documents touched here, so every step is its own single-document update.
Replays are made harmless by conditional updates: the ``payment_status`` flip
to ``paid`` and the ``stock_reserved`` flag are claimed atomically, and only
the caller that wins a claim performs the side effects that go with it.
"""
import json
import logging
import math
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument

from errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PaymentGatewayError,
    UpstreamError,
    ValidationError,
)
from helpers import (
    money,
    normalize_object_id_value,
    parse_bool,
    require_object_id,
    safe_float,
    safe_positive_int,
    utcnow,
)
from shipping import (
    DELIVERY_OPTIONS,
    PICKUP_ADDRESS,
    calculate_shipping_fee,
    is_complete_address,
    normalize_address_payload,
)
from wipay import SUCCESS_STATUSES, PaymentRequest

FULFILLMENT_CHAIN = ("pending", "confirmed", "preparing", "ready", "delivered")
ORDER_STATUSES = FULFILLMENT_CHAIN + ("cancelled",)
TERMINAL_STATUSES = frozenset({"delivered", "cancelled"})
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded")
SETTLED_PAYMENT_STATUSES = ["paid", "refunded"]

# payment method -> gateway recorded on the order and its transactions
PAYMENT_METHODS = {
    "card": "wipay",
    "bank_transfer": "bank_transfer",
    "cash_on_delivery": "cash_on_delivery",
}


def _build_status_transitions() -> Dict[str, frozenset]:
    transitions: Dict[str, frozenset] = {}
    for index, status in enumerate(FULFILLMENT_CHAIN):
        allowed = set(FULFILLMENT_CHAIN[index + 1:])
        if status not in TERMINAL_STATUSES:
            # re-posting the current status appends a note to the history
            allowed.update({status, "cancelled"})
        transitions[status] = frozenset(allowed)
    transitions["cancelled"] = frozenset()
    return transitions


STATUS_TRANSITIONS = _build_status_transitions()


def can_transition(current_status: str, requested_status: str) -> bool:
    return requested_status in STATUS_TRANSITIONS.get(current_status, frozenset())


def history_entry(status: str, actor, notes: Optional[str] = None, timestamp=None) -> Dict:
    entry: Dict[str, object] = {
        "status": status,
        "timestamp": timestamp or utcnow(),
        "updated_by": normalize_object_id_value(actor) or str(actor or "system"),
    }
    if notes:
        entry["notes"] = notes
    return entry


@dataclass
class DeliveryDetails:
    delivery_option: str = "delivery"
    shipping_address: Dict[str, str] = field(default_factory=dict)
    address_id: Optional[str] = None
    notes: str = ""

    @classmethod
    def from_payload(cls, payload: Optional[Dict]) -> "DeliveryDetails":
        payload = payload if isinstance(payload, dict) else {}
        delivery_option = (
            str(payload.get("deliveryOption") or payload.get("delivery_option") or "delivery")
            .strip()
            .lower()
        )
        if delivery_option not in DELIVERY_OPTIONS:
            raise ValidationError(
                "Delivery option must be either delivery or pickup.",
                code="INVALID_DELIVERY_OPTION",
            )
        address_id = payload.get("addressId") or payload.get("address_id")
        return cls(
            delivery_option=delivery_option,
            shipping_address=normalize_address_payload(
                payload.get("shippingAddress") or payload.get("shipping_address")
            ),
            address_id=str(address_id).strip() if address_id else None,
            notes=str(payload.get("notes") or "").strip(),
        )


@dataclass
class OrderSettings:
    currency: str = "JMD"
    shipping_flat_fee: float = 500
    remote_parish_surcharge: float = 300
    clear_cart_on_offline_order: bool = True
    strict_stock_reservation: bool = False
    require_product_approval: bool = False
    frontend_url: str = "http://localhost:8081"

    @classmethod
    def from_config(cls, config) -> "OrderSettings":
        return cls(
            shipping_flat_fee=safe_float(config.get("SHIPPING_FLAT_FEE"), 500),
            remote_parish_surcharge=safe_float(config.get("REMOTE_PARISH_SURCHARGE"), 300),
            clear_cart_on_offline_order=parse_bool(
                config.get("CLEAR_CART_ON_OFFLINE_ORDER"), True
            ),
            strict_stock_reservation=parse_bool(config.get("STRICT_STOCK_RESERVATION"), False),
            require_product_approval=parse_bool(config.get("REQUIRE_PRODUCT_APPROVAL"), False),
            frontend_url=str(config.get("FRONTEND_URL") or "http://localhost:8081").rstrip("/"),
        )


class OrderWorkflow:
    def __init__(
        self,
        db,
        inventory,
        carts,
        ledger,
        gateway,
        settings: Optional[OrderSettings] = None,
        audit=None,
        mailer=None,
        logger=None,
    ):
        self.orders = db.orders
        self.users = db.users
        self.counters = db.counters
        self.inventory = inventory
        self.carts = carts
        self.ledger = ledger
        self.gateway = gateway
        self.settings = settings or OrderSettings()
        self.audit = audit
        self.mailer = mailer
        self.logger = logger or logging.getLogger(__name__)

    def ensure_indexes(self):
        self.orders.create_index("order_number", unique=True)
        self.orders.create_index("buyer_id")
        self.orders.create_index("seller_id")
        self.orders.create_index("payment_reference")
        self.orders.create_index([("created_at", DESCENDING)])

    # --- helpers ---

    def _record(self, actor, action: str, metadata: Optional[Dict] = None):
        if self.audit is not None:
            self.audit.record(actor, action, metadata)

    def next_order_number(self) -> str:
        year = utcnow().year
        counter = self.counters.find_one_and_update(
            {"_id": f"order_number:{year}"},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return f"ORD-{year}-{counter['seq']:06d}"

    def _reload(self, order_id) -> Dict:
        return self.orders.find_one({"_id": order_id})

    def _load_user(self, user_id) -> Dict:
        user = self.users.find_one({"_id": require_object_id(user_id, "user identifier")})
        if not user:
            raise NotFoundError("User not found.", code="USER_NOT_FOUND")
        return user

    def _resolve_shipping_address(self, buyer: Dict, details: DeliveryDetails) -> Dict[str, str]:
        if details.delivery_option == "pickup":
            return dict(PICKUP_ADDRESS)

        if details.shipping_address:
            if not is_complete_address(details.shipping_address):
                raise ValidationError(
                    "Shipping address is required for delivery.", code="INVALID_ADDRESS"
                )
            return details.shipping_address

        saved_addresses = [a for a in buyer.get("addresses") or [] if isinstance(a, dict)]
        selected = None
        if details.address_id:
            selected = next(
                (a for a in saved_addresses if str(a.get("_id")) == details.address_id), None
            )
        else:
            selected = next((a for a in saved_addresses if a.get("is_default")), None)

        if selected and is_complete_address(selected):
            return normalize_address_payload(selected)
        raise ValidationError("Shipping address is required for delivery.", code="INVALID_ADDRESS")

    def _snapshot_cart(self, cart: Dict) -> Tuple[List[Dict], Optional[ObjectId]]:
        seller_id = None
        order_items: List[Dict] = []
        for cart_item in cart.get("items") or []:
            quantity = safe_positive_int(cart_item.get("quantity"), 0)
            product = self.inventory.get(cart_item.get("product_id"))
            if (
                not product
                or not product.get("available")
                or (self.settings.require_product_approval and not product.get("is_approved"))
            ):
                title = product.get("title") if product else "unknown"
                raise ValidationError(
                    f"Product {title} is not available.", code="PRODUCT_UNAVAILABLE"
                )
            if product.get("stock", 0) < quantity:
                raise ValidationError(
                    f"Only {max(product.get('stock', 0), 0)} of {product.get('title')} left in stock.",
                    code="INSUFFICIENT_STOCK",
                )

            product_seller_id = product.get("seller_id")
            if seller_id is None:
                seller_id = product_seller_id
            elif seller_id != product_seller_id:
                raise ValidationError(
                    "All items in cart must be from the same seller.", code="MULTIPLE_SELLERS"
                )

            order_items.append(
                {
                    "product_id": product["_id"],
                    "title": product.get("title") or "",
                    "quantity": quantity,
                    "price": money(cart_item.get("price")),
                }
            )
        return order_items, seller_id

    def _claim_stock(self, order: Dict) -> Optional[Dict]:
        """Reserve the order's lines unless already reserved.

        Returns the refused line when strict reservation runs short.
        """
        claimed = self.orders.find_one_and_update(
            {"_id": order["_id"], "stock_reserved": {"$ne": True}},
            {"$set": {"stock_reserved": True, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if claimed is None:
            return None
        refused = self.inventory.reserve_lines(claimed.get("items") or [])
        if refused:
            self.orders.update_one(
                {"_id": order["_id"]}, {"$set": {"stock_reserved": False}}
            )
        return refused

    def _release_stock(self, order: Dict):
        claimed = self.orders.find_one_and_update(
            {"_id": order["_id"], "stock_reserved": True},
            {"$set": {"stock_reserved": False, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if claimed is not None:
            self.inventory.release_lines(claimed.get("items") or [])

    def _amount_matches(self, order: Dict, amount) -> bool:
        paid_amount = safe_float(amount, 0.0)
        if not paid_amount:
            return True
        return math.isclose(paid_amount, money(order.get("total_amount")), abs_tol=0.01)

    def _start_card_payment(self, order: Dict, buyer: Dict) -> Dict[str, str]:
        frontend_url = self.settings.frontend_url
        payment_request = PaymentRequest(
            amount=order["total_amount"],
            currency=order.get("currency") or self.settings.currency,
            order_id=order["order_number"],
            customer_email=str(buyer.get("email") or ""),
            customer_name=str(buyer.get("display_name") or ""),
            description=f"Order {order['order_number']}",
            return_url=f"{frontend_url}/order-confirmation?orderId={order['_id']}",
            cancel_url=f"{frontend_url}/checkout?cancelled=true",
        )
        try:
            intent = self.gateway.create_payment(payment_request)
        except PaymentGatewayError as exc:
            self.orders.update_one(
                {"_id": order["_id"]},
                {"$set": {"payment_status": "failed", "updated_at": utcnow()}},
            )
            self.logger.error(
                "Payment initialisation failed for order %s: %s", order["order_number"], exc
            )
            self._record(
                order.get("buyer_id"),
                "Payment initialisation failed",
                {"order_number": order["order_number"], "error": str(exc)},
            )
            raise UpstreamError(
                str(exc) or "Failed to initialize payment.",
                code="PAYMENT_INIT_FAILED",
                details={"orderId": str(order["_id"]), "orderNumber": order["order_number"]},
            ) from exc

        self.ledger.record_attempt(
            order["_id"],
            order["total_amount"],
            payment_gateway="wipay",
            payment_reference=intent.reference,
            gateway_transaction_id=intent.transaction_id,
            currency=order.get("currency") or self.settings.currency,
        )
        self.orders.update_one(
            {"_id": order["_id"]},
            {
                "$set": {
                    "payment_reference": intent.reference,
                    "payment_status": "pending",
                    "updated_at": utcnow(),
                }
            },
        )
        return {
            "paymentUrl": intent.payment_url,
            "transactionId": intent.transaction_id,
            "reference": intent.reference,
        }

    def _reserve_or_abort(self, order: Dict):
        refused = self._claim_stock(order)
        if not refused:
            return

        now = utcnow()
        self.orders.update_one(
            {"_id": order["_id"]},
            {
                "$set": {
                    "status": "cancelled",
                    "payment_status": "failed",
                    "cancelled_at": now,
                    "updated_at": now,
                },
                "$push": {
                    "status_history": history_entry(
                        "cancelled", "system", "Insufficient stock at reservation", now
                    )
                },
            },
        )
        for transaction in self.ledger.list_for_order(order["_id"]):
            if transaction.get("status") == "pending":
                self.ledger.mark(transaction["_id"], "failed")
        self.logger.warning(
            "Order %s cancelled: stock for product %s ran out during reservation",
            order.get("order_number"),
            refused.get("product_id"),
        )
        raise ValidationError(
            f"{refused.get('title') or 'A product'} sold out while placing the order.",
            code="INSUFFICIENT_STOCK",
        )

    # --- order creation ---

    def create_order(
        self, buyer_id, details: DeliveryDetails, payment_method: str
    ) -> Tuple[Dict, Optional[Dict[str, str]]]:
        payment_method = str(payment_method or "").strip().lower()
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError(
                "Payment method must be card, bank_transfer or cash_on_delivery.",
                code="INVALID_PAYMENT_METHOD",
            )

        buyer = self._load_user(buyer_id)
        shipping_address = self._resolve_shipping_address(buyer, details)

        cart = self.carts.find(buyer["_id"])
        if not cart or not cart.get("items"):
            raise ValidationError("Cart is empty.", code="EMPTY_CART")

        order_items, seller_id = self._snapshot_cart(cart)
        if not order_items:
            raise ValidationError("Cart is empty.", code="EMPTY_CART")

        subtotal = round(sum(item["price"] * item["quantity"] for item in order_items), 2)
        shipping_fee = calculate_shipping_fee(
            details.delivery_option,
            shipping_address,
            flat_fee=self.settings.shipping_flat_fee,
            remote_surcharge=self.settings.remote_parish_surcharge,
        )

        now = utcnow()
        order: Dict[str, object] = {
            "order_number": self.next_order_number(),
            "buyer_id": buyer["_id"],
            "seller_id": seller_id,
            "items": order_items,
            "subtotal": subtotal,
            "shipping_fee": shipping_fee,
            "total_amount": round(subtotal + shipping_fee, 2),
            "currency": self.settings.currency,
            "status": "pending",
            "payment_status": "pending",
            "payment_method": payment_method,
            "payment_gateway": PAYMENT_METHODS[payment_method],
            "shipping_address": shipping_address,
            "delivery_option": details.delivery_option,
            "stock_reserved": False,
            "status_history": [history_entry("pending", buyer["_id"], timestamp=now)],
            "created_at": now,
            "updated_at": now,
        }
        if details.notes:
            order["notes"] = details.notes
        order["_id"] = self.orders.insert_one(order).inserted_id
        self.logger.info(
            "Order %s created for buyer %s (%s %.2f)",
            order["order_number"],
            buyer["_id"],
            order["currency"],
            order["total_amount"],
        )

        payment = None
        if payment_method == "card":
            payment = self._start_card_payment(order, buyer)
        else:
            self.ledger.record_attempt(
                order["_id"],
                order["total_amount"],
                payment_gateway=PAYMENT_METHODS[payment_method],
                payment_reference=order["order_number"],
                currency=order["currency"],
            )

        self._reserve_or_abort(order)

        if payment_method != "card" and self.settings.clear_cart_on_offline_order:
            self.carts.clear(buyer["_id"])

        self._record(
            buyer["_id"],
            "Created order",
            {
                "order_number": order["order_number"],
                "total": order["total_amount"],
                "payment_method": payment_method,
            },
        )
        return self._reload(order["_id"]), payment

    # --- lookups ---

    def get_buyer_order(self, order_id, buyer_id) -> Dict:
        order = self.orders.find_one(
            {
                "_id": require_object_id(order_id, "order identifier"),
                "buyer_id": require_object_id(buyer_id, "user identifier"),
            }
        )
        if not order:
            raise NotFoundError("Order not found.", code="ORDER_NOT_FOUND")
        return order

    def get_participant_order(self, order_id, user_id) -> Dict:
        user_object_id = require_object_id(user_id, "user identifier")
        order = self.orders.find_one(
            {
                "_id": require_object_id(order_id, "order identifier"),
                "$or": [{"buyer_id": user_object_id}, {"seller_id": user_object_id}],
            }
        )
        if not order:
            raise NotFoundError("Order not found.", code="ORDER_NOT_FOUND")
        return order

    def list_orders(
        self, owner_field: str, owner_id, status: Optional[str] = None, page=1, limit=10
    ) -> Dict[str, object]:
        query: Dict[str, object] = {owner_field: require_object_id(owner_id, "user identifier")}
        if status:
            if status not in ORDER_STATUSES:
                raise ValidationError("Invalid order status.", code="INVALID_STATUS")
            query["status"] = status

        page = max(safe_positive_int(page, 1), 1)
        limit = min(max(safe_positive_int(limit, 10), 1), 100)
        cursor = (
            self.orders.find(query)
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        total = self.orders.count_documents(query)
        return {
            "orders": list(cursor),
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if total else 0,
            },
        }

    # --- payment reconciliation ---

    def apply_payment_success(
        self,
        order: Dict,
        transaction: Optional[Dict] = None,
        gateway_transaction_id: Optional[str] = None,
        metadata: Optional[Dict] = None,
        actor="system",
    ) -> Dict:
        now = utcnow()
        paid_fields: Dict[str, object] = {
            "payment_status": "paid",
            "paid_at": now,
            "updated_at": now,
        }
        if gateway_transaction_id:
            paid_fields["gateway_transaction_id"] = gateway_transaction_id
        if transaction and transaction.get("payment_reference"):
            paid_fields["payment_reference"] = transaction["payment_reference"]

        updated = self.orders.find_one_and_update(
            {"_id": order["_id"], "payment_status": {"$nin": SETTLED_PAYMENT_STATUSES}},
            {"$set": paid_fields},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            self.logger.info(
                "Payment for order %s already applied; skipping", order.get("order_number")
            )
            return self._reload(order["_id"])

        if transaction is None:
            transaction = self.ledger.find_for_order(order["_id"], order.get("payment_reference"))
        if transaction is not None:
            self.ledger.mark(transaction["_id"], "success", metadata or {})
        else:
            self.logger.warning(
                "No transaction row found for paid order %s", order.get("order_number")
            )

        self.orders.update_one(
            {"_id": order["_id"], "status": "pending"},
            {
                "$set": {"status": "confirmed", "updated_at": now},
                "$push": {
                    "status_history": history_entry("confirmed", actor, "Payment received", now)
                },
            },
        )

        if updated.get("status") == "cancelled":
            # the buyer's cart may already hold a newer basket; leave it alone
            self.logger.warning(
                "Payment received for cancelled order %s; needs a refund",
                updated.get("order_number"),
            )
            self._record(
                actor,
                "Paid after cancellation",
                {
                    "order_number": updated.get("order_number"),
                    "total": updated.get("total_amount"),
                    "reference": updated.get("payment_reference"),
                    "follow_up": "refund",
                },
            )
            return self._reload(order["_id"])

        refused = self._claim_stock(updated)
        if refused:
            self.logger.error(
                "Paid order %s could not reserve product %s; order is oversold",
                updated.get("order_number"),
                refused.get("product_id"),
            )

        self.carts.clear(updated["buyer_id"])
        self.logger.info("Order %s marked as paid", updated.get("order_number"))

        paid_order = self._reload(order["_id"])
        if self.mailer is not None:
            buyer = self.users.find_one({"_id": paid_order["buyer_id"]}) or {}
            self.mailer.send_order_confirmation(paid_order, buyer.get("email"))
        self._record(
            actor,
            "Recorded paid order",
            {
                "order_number": paid_order.get("order_number"),
                "total": paid_order.get("total_amount"),
                "reference": paid_order.get("payment_reference"),
            },
        )
        return paid_order

    def apply_payment_failure(
        self, order: Dict, transaction: Optional[Dict] = None, metadata: Optional[Dict] = None
    ) -> Dict:
        updated = self.orders.find_one_and_update(
            {"_id": order["_id"], "payment_status": {"$nin": SETTLED_PAYMENT_STATUSES}},
            {"$set": {"payment_status": "failed", "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            self.logger.info(
                "Ignoring failed payment for settled order %s", order.get("order_number")
            )
            return self._reload(order["_id"])

        if transaction is None:
            transaction = self.ledger.find_for_order(order["_id"], order.get("payment_reference"))
        if transaction is not None and transaction.get("status") != "success":
            self.ledger.mark(transaction["_id"], "failed", metadata)
        self.logger.info("Payment for order %s failed", updated.get("order_number"))
        return updated

    def verify_payment(self, order_id, buyer_id, reference: Optional[str] = None) -> Dict:
        order = self.get_buyer_order(order_id, buyer_id)
        if order.get("payment_status") == "paid":
            return order
        if order.get("payment_method") != "card":
            return order

        reference = str(reference or order.get("payment_reference") or "").strip()
        if not reference:
            return order

        transaction = self.ledger.find_order_attempt(order["_id"], reference)
        if transaction is None:
            self.logger.warning(
                "Reference %s does not belong to order %s", reference, order.get("order_number")
            )
            raise ValidationError(
                "Payment reference does not belong to this order.", code="INVALID_REFERENCE"
            )
        reference = transaction.get("payment_reference") or reference

        try:
            verification = self.gateway.verify_payment(reference)
        except PaymentGatewayError as exc:
            self.logger.error(
                "Payment verification failed for order %s: %s", order.get("order_number"), exc
            )
            raise UpstreamError(
                str(exc) or "Failed to verify payment.", code="PAYMENT_VERIFY_FAILED"
            ) from exc

        if verification.succeeded and self._amount_matches(order, verification.amount):
            return self.apply_payment_success(
                order,
                transaction,
                gateway_transaction_id=verification.transaction_id or None,
                metadata=verification.metadata,
                actor=order["buyer_id"],
            )
        if verification.succeeded:
            self.logger.warning(
                "Amount %s reported for order %s does not match total %s",
                verification.amount,
                order.get("order_number"),
                order.get("total_amount"),
            )
        return self.apply_payment_failure(order, transaction, verification.metadata)

    def handle_webhook(self, raw_payload: bytes, signature: Optional[str]) -> Dict:
        if not self.gateway.verify_signature(raw_payload, signature):
            self.logger.warning("Rejected payment webhook with an invalid signature")
            raise AuthenticationError("Invalid webhook signature.", code="INVALID_SIGNATURE")

        try:
            event = json.loads(raw_payload or b"{}")
        except ValueError:
            event = None
        if not isinstance(event, dict):
            raise ValidationError("Webhook payload is not valid JSON.", code="INVALID_PAYLOAD")

        reference = str(event.get("reference") or "").strip()
        gateway_transaction_id = str(
            event.get("transactionId") or event.get("transaction_id") or ""
        ).strip()
        status = str(event.get("status") or "").strip().lower()

        transaction = self.ledger.find_by_reference(
            reference or None, gateway_transaction_id or None
        )
        if not transaction:
            self.logger.warning(
                "Payment webhook for unknown transaction %s", reference or gateway_transaction_id
            )
            raise NotFoundError("Transaction not found.", code="TRANSACTION_NOT_FOUND")

        order = self._reload(transaction["order_id"])
        if not order:
            self.logger.warning(
                "Payment webhook transaction %s points at a missing order", transaction["_id"]
            )
            raise NotFoundError("Order not found.", code="ORDER_NOT_FOUND")

        if status in SUCCESS_STATUSES and self._amount_matches(order, event.get("amount")):
            return self.apply_payment_success(
                order,
                transaction,
                gateway_transaction_id=gateway_transaction_id
                or transaction.get("gateway_transaction_id"),
                metadata=event,
                actor="system:webhook",
            )
        if status in SUCCESS_STATUSES:
            self.logger.warning(
                "Webhook amount %s for order %s does not match total %s",
                event.get("amount"),
                order.get("order_number"),
                order.get("total_amount"),
            )
        return self.apply_payment_failure(order, transaction, event)

    def retry_payment(self, order_id, buyer_id) -> Tuple[Dict, Dict[str, str]]:
        order = self.get_buyer_order(order_id, buyer_id)
        retryable = order.get("payment_status") == "failed" or (
            order.get("payment_status") == "pending" and not order.get("payment_reference")
        )
        if (
            order.get("payment_method") != "card"
            or order.get("status") == "cancelled"
            or not retryable
        ):
            raise ConflictError(
                "Payment for this order cannot be retried.", code="PAYMENT_NOT_RETRYABLE"
            )

        buyer = self._load_user(buyer_id)
        if not order.get("stock_reserved"):
            for item in order.get("items") or []:
                product = self.inventory.get(item["product_id"])
                if not product or product.get("stock", 0) < item["quantity"]:
                    remaining = max((product or {}).get("stock", 0), 0)
                    raise ValidationError(
                        f"Only {remaining} of {item.get('title')} left in stock.",
                        code="INSUFFICIENT_STOCK",
                    )

        payment = self._start_card_payment(order, buyer)
        self._reserve_or_abort(order)
        self._record(
            buyer["_id"], "Retried payment", {"order_number": order.get("order_number")}
        )
        return self._reload(order["_id"]), payment

    # --- fulfillment ---

    def _transition(
        self, order: Dict, new_status: str, actor, notes: Optional[str], conflict_code: str
    ) -> Dict:
        now = utcnow()
        updates: Dict[str, object] = {"status": new_status, "updated_at": now}
        delivery_option = order.get("delivery_option")
        if new_status == order.get("status"):
            # a repeated status only adds a history entry
            pass
        elif new_status == "delivered":
            updates["actual_delivery_date"] = now
        elif new_status == "cancelled":
            updates["cancelled_at"] = now
        elif new_status == "ready" and delivery_option == "pickup":
            updates["estimated_delivery_date"] = now + timedelta(days=2)
        elif new_status == "preparing" and delivery_option == "delivery":
            updates["estimated_delivery_date"] = now + timedelta(days=3)

        updated = self.orders.find_one_and_update(
            {"_id": order["_id"], "status": order.get("status")},
            {
                "$set": updates,
                "$push": {"status_history": history_entry(new_status, actor, notes, now)},
            },
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ConflictError(
                "Order status changed while updating; reload and try again.", code=conflict_code
            )

        if new_status == "cancelled":
            self._release_stock(updated)
            updated = self._reload(order["_id"])

        self.logger.info(
            "Order %s moved from %s to %s", order.get("order_number"), order.get("status"), new_status
        )
        self._record(
            actor,
            "Updated order status",
            {"order_number": order.get("order_number"), "from": order.get("status"), "to": new_status},
        )
        return updated

    def cancel_order(self, order_id, buyer_id) -> Dict:
        order = self.get_buyer_order(order_id, buyer_id)
        if order.get("status") in TERMINAL_STATUSES:
            raise ConflictError("Order cannot be cancelled.", code="INVALID_STATUS")
        return self._transition(order, "cancelled", order["buyer_id"], None, "INVALID_STATUS")

    def update_status(self, order_id, seller_id, status: str, notes: Optional[str] = None) -> Dict:
        order = self.orders.find_one({"_id": require_object_id(order_id, "order identifier")})
        if not order:
            raise NotFoundError("Order not found.", code="ORDER_NOT_FOUND")
        seller_object_id = require_object_id(seller_id, "user identifier")
        if order.get("seller_id") != seller_object_id:
            raise ForbiddenError("You can only update your own orders.")

        status = str(status or "").strip().lower()
        if status not in ORDER_STATUSES:
            raise ValidationError("Invalid order status.", code="INVALID_STATUS")
        if not can_transition(order.get("status"), status):
            raise ValidationError(
                f"Cannot move order from {order.get('status')} to {status}.",
                code="INVALID_STATUS_TRANSITION",
            )
        return self._transition(
            order, status, seller_object_id, (notes or "").strip() or None, "INVALID_STATUS_TRANSITION"
        )

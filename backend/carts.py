from typing import Dict, List

from pymongo import ReturnDocument

from errors import NotFoundError, ValidationError
from helpers import money, require_object_id, safe_float, safe_positive_int, utcnow


def calculate_cart_totals(items: List[Dict]) -> Dict[str, float]:
    subtotal = 0.0
    item_count = 0
    for item in items:
        if not isinstance(item, dict):
            continue
        quantity = safe_positive_int(item.get("quantity"), 0)
        subtotal += safe_float(item.get("price"), 0.0) * quantity
        item_count += quantity
    return {"subtotal": round(subtotal, 2), "item_count": item_count}


class CartStore:
    """One cart per buyer in the ``carts`` collection, keyed by ``user_id``."""

    def __init__(self, db):
        self.carts = db.carts
        self.products = db.products

    def get_or_create(self, user_id) -> Dict:
        user_object_id = require_object_id(user_id, "user identifier")
        now = utcnow()
        return self.carts.find_one_and_update(
            {"user_id": user_object_id},
            {
                "$setOnInsert": {
                    "user_id": user_object_id,
                    "items": [],
                    "subtotal": 0,
                    "item_count": 0,
                    "created_at": now,
                    "updated_at": now,
                }
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

    def find(self, user_id):
        return self.carts.find_one({"user_id": require_object_id(user_id, "user identifier")})

    def _save_items(self, cart: Dict, items: List[Dict]) -> Dict:
        totals = calculate_cart_totals(items)
        return self.carts.find_one_and_update(
            {"_id": cart["_id"]},
            {
                "$set": {
                    "items": items,
                    "subtotal": totals["subtotal"],
                    "item_count": totals["item_count"],
                    "updated_at": utcnow(),
                }
            },
            return_document=ReturnDocument.AFTER,
        )

    def _load_sellable_product(self, product_id, quantity: int) -> Dict:
        product = self.products.find_one({"_id": require_object_id(product_id, "product identifier")})
        if not product:
            raise NotFoundError("Product not found.", code="PRODUCT_NOT_FOUND")
        if not product.get("available") or product.get("stock", 0) < quantity:
            raise ValidationError(
                "Product is not available or has insufficient stock.",
                code="INSUFFICIENT_STOCK",
            )
        return product

    def add_item(self, user_id, product_id, quantity) -> Dict:
        quantity = safe_positive_int(quantity, 0)
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1.", code="INVALID_QUANTITY")

        cart = self.get_or_create(user_id)
        items = [dict(item) for item in cart.get("items") or []]
        product_object_id = require_object_id(product_id, "product identifier")
        existing = next(
            (item for item in items if item.get("product_id") == product_object_id), None
        )
        requested_total = quantity + (existing["quantity"] if existing else 0)
        product = self._load_sellable_product(product_object_id, requested_total)

        if existing:
            existing["quantity"] = requested_total
            existing["price"] = money(product.get("price"))
        else:
            items.append(
                {
                    "product_id": product_object_id,
                    "quantity": quantity,
                    "price": money(product.get("price")),
                }
            )
        return self._save_items(cart, items)

    def update_item(self, user_id, product_id, quantity) -> Dict:
        quantity = safe_positive_int(quantity, 0)
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1.", code="INVALID_QUANTITY")

        cart = self.find(user_id)
        if not cart:
            raise NotFoundError("Cart not found.", code="CART_NOT_FOUND")

        product_object_id = require_object_id(product_id, "product identifier")
        items = [dict(item) for item in cart.get("items") or []]
        line = next(
            (item for item in items if item.get("product_id") == product_object_id), None
        )
        if line is None:
            raise NotFoundError("Item not found in cart.", code="ITEM_NOT_FOUND")

        self._load_sellable_product(product_object_id, quantity)
        line["quantity"] = quantity
        return self._save_items(cart, items)

    def remove_item(self, user_id, product_id) -> Dict:
        cart = self.get_or_create(user_id)
        product_object_id = require_object_id(product_id, "product identifier")
        items = [
            dict(item)
            for item in cart.get("items") or []
            if item.get("product_id") != product_object_id
        ]
        if len(items) == len(cart.get("items") or []):
            raise NotFoundError("Item not found in cart.", code="ITEM_NOT_FOUND")
        return self._save_items(cart, items)

    def clear(self, user_id):
        self.carts.update_one(
            {"user_id": require_object_id(user_id, "user identifier")},
            {"$set": {"items": [], "subtotal": 0, "item_count": 0, "updated_at": utcnow()}},
        )

import logging
from typing import Dict, Iterable, List, Optional

from pymongo import ReturnDocument

from helpers import require_object_id, utcnow


class InventoryStore:
    """Per-product stock counter backed by the ``products`` collection.

    Every mutation is a single ``$inc`` on one product document, so each call
    is atomic on its own while a loop over several lines is not.
    """

    def __init__(self, db, logger=None, strict: bool = False):
        self.products = db.products
        self.logger = logger or logging.getLogger(__name__)
        self.strict = strict

    def get(self, product_id):
        return self.products.find_one({"_id": require_object_id(product_id, "product identifier")})

    def reserve(self, product_id, quantity: int) -> bool:
        object_id = require_object_id(product_id, "product identifier")
        query: Dict[str, object] = {"_id": object_id}
        if self.strict:
            query["stock"] = {"$gte": quantity}

        updated = self.products.find_one_and_update(
            query,
            {"$inc": {"stock": -quantity}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            self.logger.warning(
                "Stock reservation of %s for product %s rejected", quantity, object_id
            )
            return False

        remaining = updated.get("stock", 0)
        if remaining < 0:
            self.logger.warning(
                "Stock for product %s went negative (%s) after reserving %s",
                object_id,
                remaining,
                quantity,
            )
        if remaining <= 0 and updated.get("available"):
            self.products.update_one(
                {"_id": object_id, "stock": {"$lte": 0}},
                {"$set": {"available": False, "sold_out": True}},
            )
        return True

    def release(self, product_id, quantity: int):
        object_id = require_object_id(product_id, "product identifier")
        updated = self.products.find_one_and_update(
            {"_id": object_id},
            {"$inc": {"stock": quantity}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            self.logger.warning(
                "Cannot restore %s units to missing product %s", quantity, object_id
            )
            return
        if updated.get("sold_out") and updated.get("stock", 0) > 0:
            self.products.update_one(
                {"_id": object_id, "sold_out": True, "stock": {"$gt": 0}},
                {"$set": {"available": True}, "$unset": {"sold_out": ""}},
            )

    def reserve_lines(self, items: Iterable[Dict]) -> Optional[Dict]:
        """Reserve each line in turn, undoing earlier lines if one is refused.

        Returns the refused line, or ``None`` when every line was reserved.
        """
        reserved: List[Dict] = []
        for item in items:
            if not self.reserve(item["product_id"], item["quantity"]):
                self.release_lines(reserved)
                return item
            reserved.append(item)
        return None

    def release_lines(self, items: Iterable[Dict]):
        for item in items:
            self.release(item["product_id"], item["quantity"])

from typing import Dict, List, Optional

from pymongo import DESCENDING, ReturnDocument

from helpers import money, utcnow

TRANSACTION_STATUSES = ("pending", "success", "failed")


class TransactionLedger:
    """Payment attempts, stored apart from the order they belong to.

    Rows are inserted once and afterwards only their ``status`` and
    ``metadata`` change.
    """

    def __init__(self, db):
        self.transactions = db.transactions

    def ensure_indexes(self):
        self.transactions.create_index("order_id")
        self.transactions.create_index("payment_reference")
        self.transactions.create_index("gateway_transaction_id")
        self.transactions.create_index([("created_at", DESCENDING)])

    def record_attempt(
        self,
        order_id,
        amount,
        payment_gateway: str,
        payment_reference: str,
        gateway_transaction_id: Optional[str] = None,
        currency: str = "JMD",
    ) -> Dict:
        now = utcnow()
        document: Dict[str, object] = {
            "order_id": order_id,
            "amount": money(amount),
            "currency": currency,
            "payment_gateway": payment_gateway,
            "payment_reference": payment_reference,
            "status": "pending",
            "metadata": {},
            "created_at": now,
            "updated_at": now,
        }
        if gateway_transaction_id:
            document["gateway_transaction_id"] = gateway_transaction_id
        document["_id"] = self.transactions.insert_one(document).inserted_id
        return document

    def find_by_reference(
        self, reference: Optional[str] = None, gateway_transaction_id: Optional[str] = None
    ):
        if reference:
            transaction = self.transactions.find_one(
                {"payment_reference": reference}, sort=[("created_at", DESCENDING)]
            )
            if transaction:
                return transaction
        if gateway_transaction_id:
            return self.transactions.find_one(
                {"gateway_transaction_id": gateway_transaction_id},
                sort=[("created_at", DESCENDING)],
            )
        return None

    def find_for_order(self, order_id, reference: Optional[str] = None):
        query: Dict[str, object] = {"order_id": order_id}
        if reference:
            query["payment_reference"] = reference
        transaction = self.transactions.find_one(query, sort=[("created_at", DESCENDING)])
        if transaction or not reference:
            return transaction
        return self.transactions.find_one(
            {"order_id": order_id, "status": "pending"}, sort=[("created_at", DESCENDING)]
        )

    def find_order_attempt(self, order_id, reference: str):
        """Return the order's attempt carrying ``reference``, or ``None``."""
        if not reference:
            return None
        return self.transactions.find_one(
            {
                "order_id": order_id,
                "$or": [
                    {"payment_reference": reference},
                    {"gateway_transaction_id": reference},
                ],
            },
            sort=[("created_at", DESCENDING)],
        )

    def list_for_order(self, order_id) -> List[Dict]:
        return list(
            self.transactions.find({"order_id": order_id}).sort("created_at", DESCENDING)
        )

    def mark(self, transaction_id, status: str, metadata: Optional[Dict] = None):
        if status not in TRANSACTION_STATUSES:
            raise ValueError(f"Unknown transaction status: {status}")
        update: Dict[str, object] = {"status": status, "updated_at": utcnow()}
        if metadata is not None:
            update["metadata"] = metadata
        return self.transactions.find_one_and_update(
            {"_id": transaction_id},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )

import logging
from typing import Dict, Optional

from pymongo import DESCENDING

from helpers import isoformat, normalize_object_id_value, utcnow


def sanitize_metadata(metadata: Optional[Dict]) -> Dict[str, str]:
    if not isinstance(metadata, dict):
        return {}
    sanitized: Dict[str, str] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        sanitized[str(key)] = str(value)
    return sanitized


class AuditLog:
    def __init__(self, db, logger=None):
        self.collection = db.audit_logs
        self.users = db.users
        self.logger = logger or logging.getLogger(__name__)

    def ensure_indexes(self):
        self.collection.create_index([("created_at", DESCENDING)])
        self.collection.create_index([("user_id", 1), ("action", 1)])

    def record(self, actor_id, action: str, metadata: Optional[Dict] = None):
        if not action:
            return
        try:
            log_document = {
                "user_id": str(actor_id) if actor_id else None,
                "user_name": "",
                "action": action,
                "metadata": sanitize_metadata(metadata),
                "created_at": utcnow(),
            }
            actor_object_id = normalize_object_id_value(actor_id) if actor_id else None
            if actor_object_id:
                user_document = self.users.find_one({"_id": actor_object_id})
                if user_document:
                    log_document["user_name"] = user_document.get("display_name", "") or ""
                    log_document["metadata"].setdefault(
                        "user_role", str(user_document.get("role") or "buyer")
                    )
            self.collection.insert_one(log_document)
        except Exception as exc:
            self.logger.warning("Unable to record audit log: %s", exc)


def serialize_audit_log(document):
    if not document:
        return {}
    metadata = document.get("metadata")
    return {
        "id": str(document.get("_id")),
        "userId": document.get("user_id") or "",
        "userName": document.get("user_name") or "",
        "action": document.get("action") or "",
        "metadata": metadata if isinstance(metadata, dict) else {},
        "createdAt": isoformat(document.get("created_at")),
    }

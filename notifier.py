"""
Best-effort notification sink.

Workflow operations call it after the primary write; a failed write is logged
and dropped so it can never fail the request that triggered it.
"""

from typing import Iterable, Optional

import structlog
from pydantic import ValidationError
from pymongo.errors import PyMongoError

from database import create_document
from schemas import Notification as NotificationSchema

log = structlog.get_logger(__name__)


class Notifier:
    def __init__(self, database):
        self.db = database

    def notify(self, user_id: Optional[str], message: str) -> bool:
        if not user_id or not message:
            return False
        try:
            create_document(self.db, "notification", NotificationSchema(user_id=str(user_id), message=message))
        except (PyMongoError, ValidationError) as e:
            log.warning("notification_failed", user_id=str(user_id), error=str(e))
            return False
        return True

    def notify_many(self, user_ids: Iterable[str], message: str) -> int:
        return sum(1 for uid in user_ids if self.notify(uid, message))

    def notify_role(self, role: str, message: str, department: Optional[str] = None) -> int:
        """Notify every user holding ``role`` (optionally within a department)."""
        query = {"role": role}
        if department is not None:
            query["department"] = department
        try:
            user_ids = [str(u["_id"]) for u in self.db["user"].find(query, {"_id": 1})]
        except PyMongoError as e:
            log.warning("notification_recipients_failed", role=role, department=department, error=str(e))
            return 0
        return self.notify_many(user_ids, message)

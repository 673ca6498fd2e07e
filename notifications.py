"""
Notification sink.

Notifications are stored for the in-app feed. Sending them anywhere else is
someone else's job, and a failure here never affects the caller.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId

from database import create_document, parse_object_id
from errors import NotificationNotFound
from schemas import Notification

logger = logging.getLogger(__name__)

COLLECTION = "notification"


class NotificationSink:
    def __init__(self, database):
        self.db = database

    def notify(self, user_id: str, title: str, message: str, type: str, link: Optional[str] = None,
               metadata: Optional[Dict[str, Any]] = None) -> Optional[str]:
        """Store a notification for `user_id`. Returns its id, or None if it could not be stored."""
        try:
            note = Notification(user_id=user_id, title=title, message=message, type=type,
                                link=link, metadata=metadata)
            return create_document(COLLECTION, note, database=self.db)
        except Exception:
            logger.exception("Could not store %s notification for user %s", type, user_id)
            return None

    def notify_many(self, user_ids: Iterable[str], title: str, message: str, type: str,
                    link: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> None:
        for user_id in user_ids:
            self.notify(user_id, title, message, type, link, metadata)

    def list_for(self, user_id: str, unread_only: bool = False, limit: int = 50) -> List[dict]:
        query: Dict[str, Any] = {"user_id": user_id}
        if unread_only:
            query["read"] = False
        cursor = self.db[COLLECTION].find(query).sort("created_at", -1).limit(limit)
        return list(cursor)

    def mark_read(self, user_id: str, notification_id: str) -> dict:
        oid: ObjectId = parse_object_id(notification_id, "notification id")
        result = self.db[COLLECTION].find_one_and_update(
            {"_id": oid, "user_id": user_id},
            {"$set": {"read": True}},
            return_document=True,
        )
        if not result:
            raise NotificationNotFound(notification_id)
        return result

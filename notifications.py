"""
Seller notification lifecycle: creation, mark-as-read and delete.

Read and delete are scoped to the owning seller. A notification that does not
exist, or belongs to someone else, is left alone and the call still succeeds;
the return value only says whether anything matched.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, List

from bson import ObjectId

from database import utcnow
from errors import InvalidArgument
from identity import NOTIFICATION_TARGET_FIELDS, OwnerRef
from schemas import Notification

logger = logging.getLogger(__name__)

WELCOME_NOTIFICATIONS = [
    {
        "title": "Welcome to Seller Dashboard",
        "message": "Your seller account has been successfully activated. You can now start posting properties and managing inquiries!",
        "type": "welcome",
        "priority": "high",
        "age": timedelta(0),
    },
    {
        "title": "Premium Plan Available",
        "message": "Upgrade to our premium plan to get more visibility for your properties and priority support.",
        "type": "premium_offer",
        "priority": "normal",
        "age": timedelta(minutes=30),
    },
]


def _notification_id(notification_id: str) -> ObjectId:
    if not ObjectId.is_valid(notification_id):
        raise InvalidArgument("Invalid notification ID")
    return ObjectId(notification_id)


def build_seller_notification(owner: OwnerRef, title: str, message: str, type: str = "admin_notification", priority: str = "normal", created_at=None) -> Dict[str, Any]:
    return Notification(
        sellerId=owner.native,
        userId=owner.native,
        title=title,
        message=message,
        type=type,
        priority=priority,
        createdAt=created_at or utcnow(),
    ).model_dump()


def create_seller_notification(db, owner: OwnerRef, title: str, message: str, **fields) -> str:
    doc = build_seller_notification(owner, title, message, **fields)
    result = db["notifications"].insert_one(doc)
    return str(result.inserted_id)


def seed_welcome_notifications(db, owner: OwnerRef) -> List[Dict[str, Any]]:
    """Persist the welcome and premium-offer notifications for a seller and return them."""
    now = utcnow()
    docs = [
        build_seller_notification(
            owner,
            item["title"],
            item["message"],
            type=item["type"],
            priority=item["priority"],
            created_at=now - item["age"],
        )
        for item in WELCOME_NOTIFICATIONS
    ]
    result = db["notifications"].insert_many(docs)
    for doc, inserted_id in zip(docs, result.inserted_ids):
        doc["_id"] = inserted_id
    logger.info("Seeded %d welcome notifications for seller %s", len(docs), owner)
    return docs


def _owned(notification_id: ObjectId, owner: OwnerRef, fields) -> Dict[str, Any]:
    return {"_id": notification_id, **owner.match(*fields)}


def mark_read(db, notification_id: str, owner: OwnerRef) -> bool:
    oid = _notification_id(notification_id)
    now = utcnow()
    result = db["notifications"].update_one(
        _owned(oid, owner, NOTIFICATION_TARGET_FIELDS),
        {"$set": {"isRead": True, "readAt": now}},
    )
    if result.matched_count:
        return True
    result = db["user_notifications"].update_one(
        _owned(oid, owner, ("userId",)),
        {"$set": {"readAt": now}},
    )
    if not result.matched_count:
        logger.info("mark_read: no notification %s owned by %s", notification_id, owner)
    return bool(result.matched_count)


def delete_notification(db, notification_id: str, owner: OwnerRef) -> bool:
    oid = _notification_id(notification_id)
    result = db["notifications"].delete_one(_owned(oid, owner, NOTIFICATION_TARGET_FIELDS))
    if result.deleted_count:
        return True
    result = db["user_notifications"].delete_one(_owned(oid, owner, ("userId",)))
    if not result.deleted_count:
        logger.info("delete: no notification %s owned by %s", notification_id, owner)
    return bool(result.deleted_count)


def count_unread_notifications(db, owner: OwnerRef) -> int:
    query = {"isRead": False, **owner.match(*NOTIFICATION_TARGET_FIELDS)}
    return db["notifications"].count_documents(query)

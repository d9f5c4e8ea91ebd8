"""
Seller notification feed.

Four sources land in the feed: admin notifications, per-user notifications
sent by admins, buyer conversations with unread messages, and direct messages.
Each source has a reader (a query) and a projection into ``UnifiedFeedItem``;
``unify`` merges projected items newest first. Readers run concurrently and a
failing reader only empties its own source.
"""
import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Hashable, List, Mapping, Optional, Tuple

from bson import ObjectId
from pydantic import ValidationError

from config import settings
from database import TIMEOUT_ERRORS, id_str, to_datetime
from errors import StorageError, StorageTimeout
from identity import NOTIFICATION_TARGET_FIELDS, OwnerRef, id_candidates
from notifications import seed_welcome_notifications
from schemas import UnifiedFeedItem

logger = logging.getLogger(__name__)


class FeedSource(str, Enum):
    ADMIN_NOTIFICATION = "admin_notification"
    USER_NOTIFICATION = "user_notification"
    CONVERSATION = "conversation"
    DIRECT_MESSAGE = "direct_message"


@dataclass
class ConversationDigest:
    conversation: Dict[str, Any]
    property: Optional[Dict[str, Any]]
    buyer: Optional[Dict[str, Any]]
    last_message: Optional[Dict[str, Any]]
    unread_count: int


# Readers
def read_admin_notifications(db, owner: OwnerRef) -> List[dict]:
    query = {
        "$or": owner.clauses(*NOTIFICATION_TARGET_FIELDS)
        + [
            {"audience": {"$in": ["sellers", "all"]}},
            {"audience": "specific", "specificUsers": {"$in": owner.values}},
        ]
    }
    return list(db["notifications"].find(query).sort("createdAt", -1))


def read_user_notifications(db, owner: OwnerRef) -> List[dict]:
    return list(db["user_notifications"].find(owner.match("userId")).sort("sentAt", -1))


def read_direct_messages(db, owner: OwnerRef) -> List[dict]:
    query = {
        "$or": owner.clauses("receiverId", "targetUserId")
        + [{"conversationId": {"$exists": False}, "recipientId": {"$in": owner.values}}]
    }
    return list(db["messages"].find(query).sort("createdAt", -1))


def message_readers(message: Mapping[str, Any]) -> List[Any]:
    return [r.get("userId") if isinstance(r, dict) else r for r in message.get("readBy") or []]


def count_unread(messages: List[Mapping[str, Any]], owner: OwnerRef) -> int:
    """Messages sent by someone else that the seller has not read."""
    return sum(
        1
        for m in messages
        if not owner.is_same(m.get("senderId")) and not owner.in_list(message_readers(m))
    )


def latest_message(messages: List[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
    return max(messages, key=lambda m: to_datetime(m.get("createdAt")), default=None)


def _object_ids(values) -> List[ObjectId]:
    found = []
    for value in values:
        found.extend(v for v in id_candidates(value) if isinstance(v, ObjectId))
    return list(set(found))


def read_conversations(db, owner: OwnerRef) -> List[ConversationDigest]:
    conversations = list(db["conversations"].find(owner.match("seller", "participants")))
    if not conversations:
        return []

    property_ids = _object_ids(c.get("property") for c in conversations)
    buyer_ids = _object_ids(c.get("buyer") for c in conversations)
    properties = {
        str(p["_id"]): p
        for p in db["properties"].find({"_id": {"$in": property_ids}}, {"title": 1, "price": 1})
    }
    buyers = {str(u["_id"]): u for u in db["users"].find({"_id": {"$in": buyer_ids}}, {"name": 1})}

    thread_keys = [key for c in conversations for key in id_candidates(c["_id"])]
    by_thread = defaultdict(list)
    for message in db["messages"].find({"conversationId": {"$in": thread_keys}}):
        by_thread[id_str(message["conversationId"])].append(message)

    digests = []
    for conversation in conversations:
        messages = by_thread.get(str(conversation["_id"]), [])
        digests.append(
            ConversationDigest(
                conversation=conversation,
                property=properties.get(id_str(conversation.get("property"))),
                buyer=buyers.get(id_str(conversation.get("buyer"))),
                last_message=latest_message(messages),
                unread_count=count_unread(messages, owner),
            )
        )
    return digests


READERS: Dict[FeedSource, Callable[[Any, OwnerRef], list]] = {
    FeedSource.ADMIN_NOTIFICATION: read_admin_notifications,
    FeedSource.USER_NOTIFICATION: read_user_notifications,
    FeedSource.CONVERSATION: read_conversations,
    FeedSource.DIRECT_MESSAGE: read_direct_messages,
}


# Projections
def _text(value, default: Optional[str] = None) -> Optional[str]:
    """Stored display fields are not always strings; empty falls back to ``default``."""
    if value is None or value == "":
        return default
    return value if isinstance(value, str) else str(value)


def project_admin_notification(doc: Mapping[str, Any]) -> UnifiedFeedItem:
    return UnifiedFeedItem(
        id=id_str(doc["_id"]),
        title=_text(doc.get("title"), "Admin Notification"),
        message=_text(doc.get("message")),
        type=_text(doc.get("type"), "admin_notification"),
        sender_role="admin",
        sender_name="Admin",
        isRead=bool(doc.get("isRead")),
        createdAt=to_datetime(doc.get("createdAt") or doc.get("sentAt")),
        source=FeedSource.ADMIN_NOTIFICATION.value,
        priority=_text(doc.get("priority"), "normal"),
        propertyId=id_str(doc.get("propertyId")),
    )


def project_user_notification(doc: Mapping[str, Any]) -> UnifiedFeedItem:
    return UnifiedFeedItem(
        id=id_str(doc["_id"]),
        title=_text(doc.get("title"), "Message from Admin"),
        message=_text(doc.get("message")),
        type=_text(doc.get("type"), "admin_message"),
        sender_role="admin",
        sender_name="Admin",
        isRead=bool(doc.get("readAt")),
        createdAt=to_datetime(doc.get("sentAt")),
        source=FeedSource.USER_NOTIFICATION.value,
    )


def project_conversation(digest: ConversationDigest) -> Optional[UnifiedFeedItem]:
    # Fully read threads stay out of the feed.
    if digest.last_message is None or digest.unread_count <= 0:
        return None
    last = digest.last_message
    prop = digest.property or {}
    thread_id = id_str(digest.conversation["_id"])
    return UnifiedFeedItem(
        id=thread_id,
        title="New message about %s" % (prop.get("title") or "your property"),
        message=_text(last.get("message") or last.get("content")),
        type="property_inquiry",
        sender_role=_text(last.get("senderType"), "buyer"),
        sender_name=_text((digest.buyer or {}).get("name"), "User"),
        isRead=False,
        createdAt=to_datetime(last.get("createdAt")),
        source=FeedSource.CONVERSATION.value,
        propertyId=id_str(prop.get("_id")),
        propertyTitle=_text(prop.get("title")),
        conversationId=thread_id,
        unreadCount=digest.unread_count,
    )


def project_direct_message(doc: Mapping[str, Any]) -> UnifiedFeedItem:
    return UnifiedFeedItem(
        id=id_str(doc["_id"]),
        title=_text(doc.get("title"), "Direct Message"),
        message=_text(doc.get("message") or doc.get("content")),
        type=_text(doc.get("type"), "direct_message"),
        sender_role=_text(doc.get("senderType"), "admin"),
        sender_name=_text(doc.get("senderName"), "Admin"),
        isRead=bool(doc.get("isRead")),
        createdAt=to_datetime(doc.get("createdAt")),
        source=FeedSource.DIRECT_MESSAGE.value,
        priority=_text(doc.get("priority"), "normal"),
    )


PROJECTIONS: Dict[FeedSource, Callable[[Any], Optional[UnifiedFeedItem]]] = {
    FeedSource.ADMIN_NOTIFICATION: project_admin_notification,
    FeedSource.USER_NOTIFICATION: project_user_notification,
    FeedSource.CONVERSATION: project_conversation,
    FeedSource.DIRECT_MESSAGE: project_direct_message,
}


def _record_id(record) -> Optional[str]:
    if isinstance(record, ConversationDigest):
        record = record.conversation
    return id_str(record.get("_id")) if isinstance(record, Mapping) else None


def unify(batches: Mapping[FeedSource, list]) -> List[UnifiedFeedItem]:
    """Project every source record and merge newest first.

    Equal timestamps keep source order (admin, user, conversation, direct),
    then each source's own order. A record that cannot be projected is logged
    and left out.
    """
    items = []
    for source in FeedSource:
        project = PROJECTIONS[source]
        for record in batches.get(source) or []:
            try:
                item = project(record)
            except ValidationError as exc:
                logger.warning("Skipping %s record %s: %s", source.value, _record_id(record), exc)
                continue
            if item is not None:
                items.append(item)
    items.sort(key=lambda item: item.createdAt, reverse=True)
    return items


def gather_sources(
    readers: Mapping[Hashable, Callable[[], list]],
    max_workers: Optional[int] = None,
    error_message: str = "Failed to read sources",
) -> Tuple[Dict[Hashable, list], List[Hashable]]:
    """Run independent readers concurrently.

    A reader that raises is logged and contributes an empty list; its key is
    returned in the failure list. If every reader fails, StorageError, or
    StorageTimeout when every failure was a driver timeout.
    """
    results: Dict[Hashable, list] = {}
    failed: List[Hashable] = []
    timed_out = 0
    if not readers:
        return results, failed
    workers = max(1, min(max_workers or settings.feed_reader_workers, len(readers)))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        future_map = {executor.submit(reader): key for key, reader in readers.items()}
        for future in as_completed(future_map):
            key = future_map[future]
            try:
                results[key] = future.result()
            except Exception as exc:
                logger.exception("Source %s failed; continuing without it", getattr(key, "value", key))
                results[key] = []
                failed.append(key)
                if isinstance(exc, TIMEOUT_ERRORS):
                    timed_out += 1
    if len(failed) == len(readers):
        if timed_out == len(readers):
            raise StorageTimeout(error_message)
        raise StorageError(error_message)
    return results, failed


def build_feed(db, owner: OwnerRef, seed_when_empty: Optional[bool] = None) -> List[UnifiedFeedItem]:
    """Merged notification feed for one seller, newest first.

    An empty feed (with every source answering) is seeded with the welcome
    notifications, which are persisted and returned.
    """
    if seed_when_empty is None:
        seed_when_empty = settings.seed_welcome_notifications

    batches, failed = gather_sources(
        {source: (lambda reader=reader: reader(db, owner)) for source, reader in READERS.items()},
        error_message="Failed to fetch notifications",
    )
    logger.info(
        "Feed for %s: %s",
        owner,
        ", ".join("%s=%d" % (source.value, len(batches.get(source, []))) for source in FeedSource),
    )

    items = unify(batches)
    if items or failed or not seed_when_empty:
        return items

    seeded = seed_welcome_notifications(db, owner)
    return [project_admin_notification(doc) for doc in seeded]

"""
Seller inbox: every buyer conversation the seller can answer, one list.

Three sources, read concurrently like the notification feed:
- chat inquiries opened from a property page (``property_inquiries``)
- form enquiries sent against one of the seller's properties (``enquiries``)
- direct messages the seller sent or received (``messages``)
"""
import logging
from typing import Any, Dict, List, Mapping

from bson import ObjectId
from pydantic import ValidationError

from database import id_str, to_datetime
from feed import gather_sources
from identity import PROPERTY_OWNER_FIELDS, OwnerRef, id_candidates
from schemas import UnifiedMessage

logger = logging.getLogger(__name__)


def _append(items: List[UnifiedMessage], **fields) -> None:
    # A malformed record is skipped, not the whole source.
    try:
        items.append(UnifiedMessage(**fields))
    except ValidationError as exc:
        logger.warning("Skipping %s record %s: %s", fields.get("source"), fields.get("id"), exc)


def _lookup(db, collection: str, ids, projection) -> Dict[str, Dict[str, Any]]:
    object_ids = list({v for value in ids for v in id_candidates(value) if isinstance(v, ObjectId)})
    if not object_ids:
        return {}
    return {str(doc["_id"]): doc for doc in db[collection].find({"_id": {"$in": object_ids}}, projection)}


def read_chat_inquiries(db, owner: OwnerRef) -> List[UnifiedMessage]:
    inquiries = list(db["property_inquiries"].find(owner.match("sellerId")).sort("createdAt", -1))
    buyers = _lookup(db, "users", (i.get("buyerId") for i in inquiries), {"name": 1, "email": 1, "phone": 1})
    properties = _lookup(db, "properties", (i.get("propertyId") for i in inquiries), {"title": 1, "price": 1})

    items = []
    for inquiry in inquiries:
        buyer = buyers.get(id_str(inquiry.get("buyerId"))) or {}
        prop = properties.get(id_str(inquiry.get("propertyId"))) or {}
        _append(
            items,
            id=id_str(inquiry["_id"]),
            buyerId=id_str(inquiry.get("buyerId")),
            buyerName=buyer.get("name") or "Unknown Buyer",
            buyerEmail=buyer.get("email") or "",
            buyerPhone=str(buyer.get("phone") or ""),
            message=inquiry.get("message") or "",
            propertyId=id_str(inquiry.get("propertyId")),
            propertyTitle=prop.get("title") or "Unknown Property",
            propertyPrice=prop.get("price") or 0,
            timestamp=to_datetime(inquiry.get("createdAt") or inquiry.get("timestamp")),
            isRead=bool(inquiry.get("isRead")),
            source="chat",
            conversationId=id_str(inquiry.get("conversationId")),
        )
    return items


def seller_properties(db, owner: OwnerRef, projection=None) -> List[dict]:
    return list(db["properties"].find(owner.match(*PROPERTY_OWNER_FIELDS), projection).sort("createdAt", -1))


def read_form_enquiries(db, owner: OwnerRef) -> List[UnifiedMessage]:
    properties = {str(p["_id"]): p for p in seller_properties(db, owner, {"_id": 1, "title": 1, "price": 1})}
    if not properties:
        return []
    property_keys = [key for pid in properties for key in id_candidates(pid)]
    enquiries = db["enquiries"].find({"propertyId": {"$in": property_keys}}).sort("createdAt", -1)

    items = []
    for enquiry in enquiries:
        prop = properties.get(id_str(enquiry.get("propertyId"))) or {}
        _append(
            items,
            id=id_str(enquiry["_id"]),
            buyerName=enquiry.get("name") or "",
            buyerPhone=str(enquiry.get("phone") or ""),
            message=enquiry.get("message") or "",
            propertyId=id_str(enquiry.get("propertyId")),
            propertyTitle=prop.get("title") or "",
            propertyPrice=prop.get("price") or 0,
            timestamp=to_datetime(enquiry.get("createdAt") or enquiry.get("timestamp")),
            isRead=enquiry.get("status") != "new",
            source="enquiry",
            enquiryId=id_str(enquiry["_id"]),
        )
    return items


def read_direct_messages(db, owner: OwnerRef) -> List[UnifiedMessage]:
    messages = list(db["messages"].find(owner.match("senderId", "receiverId", "targetUserId")).sort("createdAt", -1))
    receivers = _lookup(db, "users", (m.get("receiverId") for m in messages), {"name": 1})

    items = []
    for dm in messages:
        buyer_name = "Buyer"
        if dm.get("receiverId"):
            buyer_name = (receivers.get(id_str(dm["receiverId"])) or {}).get("name") or buyer_name
        elif dm.get("receiverPhone"):
            buyer_name = str(dm["receiverPhone"])
        _append(
            items,
            id=id_str(dm["_id"]),
            buyerId=id_str(dm.get("receiverId")),
            buyerName=buyer_name,
            buyerEmail=dm.get("receiverEmail") or "",
            buyerPhone=str(dm.get("receiverPhone") or ""),
            message=dm.get("message") or dm.get("content") or "",
            propertyId=id_str(dm.get("propertyId") or dm.get("enquiryPropertyId")),
            propertyTitle=dm.get("propertyTitle") or "",
            propertyPrice=dm.get("propertyPrice") or 0,
            timestamp=to_datetime(dm.get("createdAt")),
            isRead=bool(dm.get("isRead")),
            source=dm.get("source") or "direct",
            conversationId=id_str(dm.get("conversationId")),
            enquiryId=id_str(dm.get("enquiryId")),
        )
    return items


INBOX_READERS = {
    "chat": read_chat_inquiries,
    "enquiry": read_form_enquiries,
    "direct": read_direct_messages,
}


def merge_messages(batches: Mapping[str, List[UnifiedMessage]]) -> List[UnifiedMessage]:
    merged = [item for key in INBOX_READERS for item in batches.get(key) or []]
    merged.sort(key=lambda item: item.timestamp, reverse=True)
    return merged


def build_inbox(db, owner: OwnerRef) -> List[UnifiedMessage]:
    batches, _ = gather_sources(
        {key: (lambda reader=reader: reader(db, owner)) for key, reader in INBOX_READERS.items()},
        error_message="Failed to fetch messages",
    )
    return merge_messages(batches)

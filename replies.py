"""
Seller replies to buyers.

A reply answers whichever channel the buyer used: a chat conversation, a form
enquiry, or neither (an ad-hoc message to a buyer id or phone number). Only the
message insert decides success. Touching the conversation, marking the
enquiry contacted and the real-time event are side effects that run
independently; their outcomes are collected in a ``SideEffectReport`` and
their failures are logged, never raised.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from bson import ObjectId
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import TIMEOUT_ERRORS, id_str, utcnow
from errors import PersistenceError, StorageTimeout, ValidationError
from identity import OwnerRef, id_candidates
from realtime import NEW_NOTIFICATION_EVENT, RealtimeNotifier, deliver, notifier as default_notifier
from schemas import Conversation, Message, ReplyRequest

logger = logging.getLogger(__name__)

OK = "ok"
FAILED = "failed"
SKIPPED = "skipped"
SCHEDULED = "scheduled"


@dataclass
class SideEffectReport:
    outcomes: Dict[str, str] = field(default_factory=dict)

    def record(self, name: str, outcome: str) -> None:
        self.outcomes[name] = outcome

    def run(self, name: str, func: Callable, *args) -> None:
        try:
            done = func(*args)
        except Exception:
            logger.warning("Reply side effect %s failed", name, exc_info=True)
            self.record(name, FAILED)
        else:
            self.record(name, SKIPPED if done is False else OK)

    @property
    def failed(self):
        return [name for name, outcome in self.outcomes.items() if outcome == FAILED]


@dataclass
class ReplyResult:
    message_id: str
    conversation_id: Optional[str]
    conversation_created: bool = False
    side_effects: SideEffectReport = field(default_factory=SideEffectReport)


def find_conversation(db, property_id, buyer_id, owner: OwnerRef) -> Optional[Dict[str, Any]]:
    return db["conversations"].find_one(
        {
            "property": {"$in": id_candidates(property_id)},
            "buyer": {"$in": id_candidates(buyer_id)},
            "seller": {"$in": owner.values},
        }
    )


def find_or_create_conversation(db, property_id: str, buyer_id: str, owner: OwnerRef) -> Tuple[Dict[str, Any], bool]:
    """The single conversation for (property, buyer, seller), created if missing.

    The unique ``conversation_triple`` index turns a concurrent duplicate
    insert into DuplicateKeyError, in which case the winner's thread is used.
    """
    existing = find_conversation(db, property_id, buyer_id, owner)
    if existing is not None:
        return existing, False

    now = utcnow()
    doc = Conversation(
        property=ObjectId(property_id),
        buyer=buyer_id,
        seller=owner.raw,
        participants=[buyer_id, owner.raw],
        createdAt=now,
        updatedAt=now,
        lastMessageAt=now,
    ).model_dump()
    try:
        result = db["conversations"].insert_one(doc)
    except DuplicateKeyError:
        existing = find_conversation(db, property_id, buyer_id, owner)
        if existing is None:
            raise
        logger.info("Conversation for property %s and buyer %s created concurrently; reusing it", property_id, buyer_id)
        return existing, False
    doc["_id"] = result.inserted_id
    return doc, True


def touch_conversation(db, conversation_id) -> bool:
    now = utcnow()
    result = db["conversations"].update_one(
        {"_id": {"$in": id_candidates(conversation_id)}},
        {"$set": {"lastMessageAt": now, "updatedAt": now}},
    )
    return bool(result.matched_count)


def mark_enquiry_contacted(db, enquiry_id) -> bool:
    result = db["enquiries"].update_one(
        {"_id": {"$in": id_candidates(enquiry_id)}},
        {"$set": {"status": "contacted", "updatedAt": utcnow()}},
    )
    if not result.matched_count:
        logger.warning("Reply referenced unknown enquiry %s", enquiry_id)
    return bool(result.matched_count)


def _event_payload(message_id, doc: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "_id": str(message_id),
        "message": doc["message"],
        "senderId": doc["senderId"],
        "senderType": doc["senderType"],
        "propertyId": doc.get("propertyId"),
        "enquiryId": doc.get("enquiryId"),
        "createdAt": doc["createdAt"],
        "conversationId": doc.get("conversationId"),
        "source": doc.get("source") or "seller_reply",
    }


def send_seller_reply(
    db,
    owner: OwnerRef,
    request: ReplyRequest,
    schedule: Optional[Callable] = None,
    notifier: Optional[RealtimeNotifier] = None,
) -> ReplyResult:
    """Persist a seller's reply and fan out its side effects.

    ``schedule(func, *args)`` queues the real-time delivery to run after the
    response (FastAPI's ``BackgroundTasks.add_task``); without it no event is
    sent.
    """
    text = (request.message or "").strip()
    if not text:
        raise ValidationError("Message is required")

    notifier = notifier or default_notifier
    buyer_id = request.buyerId or None
    buyer_phone = str(request.buyerPhone) if request.buyerPhone else None

    message = Message(
        senderId=owner.raw,
        senderType="seller",
        message=text,
        createdAt=utcnow(),
        source="seller_reply",
        receiverId=buyer_id,
        receiverPhone=buyer_phone,
        propertyId=request.propertyId or None,
        enquiryId=request.enquiryId or None,
    )

    conversation = None
    created = False
    if message.propertyId and buyer_id:
        if not ObjectId.is_valid(message.propertyId):
            logger.warning("Reply for property %s: not a valid id, sending without a conversation", message.propertyId)
        else:
            try:
                conversation, created = find_or_create_conversation(db, message.propertyId, buyer_id, owner)
            except PyMongoError:
                logger.warning("Could not create/find conversation for reply", exc_info=True)

    if conversation is not None:
        message.conversationId = id_str(conversation["_id"])

    doc = message.model_dump(exclude_none=True)
    try:
        result = db["messages"].insert_one(doc)
    except TIMEOUT_ERRORS as exc:
        logger.error("Timed out saving seller reply: %s", exc)
        raise StorageTimeout("Failed to send message") from exc
    except PyMongoError as exc:
        logger.error("Error saving seller reply: %s", exc)
        raise PersistenceError("Failed to send message") from exc

    report = SideEffectReport()
    if conversation is not None:
        report.run("conversation_touch", touch_conversation, db, conversation["_id"])
    else:
        report.record("conversation_touch", SKIPPED)
    if message.enquiryId:
        report.run("enquiry_contacted", mark_enquiry_contacted, db, message.enquiryId)
    else:
        report.record("enquiry_contacted", SKIPPED)

    payload = _event_payload(result.inserted_id, doc)
    if schedule is None:
        report.record("realtime_emit", SKIPPED)
    elif conversation is not None:
        event = dict(payload, text=payload["message"], sender=payload["senderId"])
        report.run("realtime_emit", schedule, deliver, notifier.emit_new_message, conversation, event)
    elif buyer_id or buyer_phone:
        report.run("realtime_emit", schedule, deliver, notifier.emit_to_user, buyer_id or buyer_phone, NEW_NOTIFICATION_EVENT, payload)
    else:
        report.record("realtime_emit", SKIPPED)
    if report.outcomes.get("realtime_emit") == OK:
        report.record("realtime_emit", SCHEDULED)

    return ReplyResult(
        message_id=str(result.inserted_id),
        conversation_id=message.conversationId,
        conversation_created=created,
        side_effects=report,
    )

import asyncio

import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError, PyMongoError

import replies
from errors import PersistenceError, ValidationError
from realtime import NEW_MESSAGE_EVENT, NEW_NOTIFICATION_EVENT, RealtimeNotifier
from replies import find_or_create_conversation, send_seller_reply
from schemas import ReplyRequest


class Scheduler:
    def __init__(self):
        self.tasks = []

    def __call__(self, func, *args):
        self.tasks.append((func, args))

    def run_all(self):
        async def run():
            for func, args in self.tasks:
                await func(*args)

        asyncio.run(run())


@pytest.mark.parametrize("body", [None, "", "   \n\t"])
def test_blank_reply_is_rejected_without_writing(mongo_db, owner, body):
    with pytest.raises(ValidationError):
        send_seller_reply(mongo_db, owner, ReplyRequest(message=body, buyerId="b1"))
    assert mongo_db["messages"].count_documents({}) == 0


def test_reply_creates_one_conversation_per_triple(mongo_db, owner):
    property_id = str(ObjectId())
    buyer_id = str(ObjectId())
    request = ReplyRequest(message="  Yes, it is available  ", buyerId=buyer_id, propertyId=property_id)

    first = send_seller_reply(mongo_db, owner, request)
    second = send_seller_reply(mongo_db, owner, request)

    assert first.conversation_created is True
    assert second.conversation_created is False
    assert first.conversation_id == second.conversation_id
    assert mongo_db["conversations"].count_documents({}) == 1

    conversation = mongo_db["conversations"].find_one()
    assert conversation["property"] == ObjectId(property_id)
    assert conversation["participants"] == [buyer_id, owner.raw]

    message = mongo_db["messages"].find_one({"_id": ObjectId(first.message_id)})
    assert message["message"] == "Yes, it is available"
    assert message["senderType"] == "seller"
    assert message["source"] == "seller_reply"
    assert message["conversationId"] == str(conversation["_id"])


def test_reply_reuses_legacy_conversation_encodings(mongo_db, owner):
    property_id = ObjectId()
    buyer_id = ObjectId()
    legacy_id = mongo_db["conversations"].insert_one(
        {"property": str(property_id), "buyer": buyer_id, "seller": owner.object_id, "participants": []}
    ).inserted_id

    result = send_seller_reply(
        mongo_db, owner, ReplyRequest(message="hi", buyerId=str(buyer_id), propertyId=str(property_id))
    )

    assert result.conversation_id == str(legacy_id)
    assert mongo_db["conversations"].count_documents({}) == 1


def test_concurrent_create_falls_back_to_existing_thread(mongo_db, owner, monkeypatch):
    property_id = str(ObjectId())
    buyer_id = str(ObjectId())
    winner, _ = find_or_create_conversation(mongo_db, property_id, buyer_id, owner)

    real_find = replies.find_conversation
    calls = []

    def find_missing_first(*args):
        # The first lookup runs before the other request's insert lands.
        calls.append(args)
        return None if len(calls) == 1 else real_find(*args)

    monkeypatch.setattr(replies, "find_conversation", find_missing_first)

    conversation, created = find_or_create_conversation(mongo_db, property_id, buyer_id, owner)

    assert created is False
    assert conversation["_id"] == winner["_id"]
    assert len(calls) == 2
    assert mongo_db["conversations"].count_documents({}) == 1


def test_reply_marks_enquiry_contacted_idempotently(mongo_db, owner):
    enquiry_id = mongo_db["enquiries"].insert_one(
        {"name": "Meera", "phone": "9999", "message": "Call me", "propertyId": str(ObjectId()), "status": "new"}
    ).inserted_id
    request = ReplyRequest(message="Calling you now", buyerPhone="9999", enquiryId=str(enquiry_id))

    first = send_seller_reply(mongo_db, owner, request)
    second = send_seller_reply(mongo_db, owner, request)

    assert mongo_db["enquiries"].find_one({"_id": enquiry_id})["status"] == "contacted"
    assert first.side_effects.outcomes["enquiry_contacted"] == "ok"
    assert second.side_effects.outcomes["enquiry_contacted"] == "ok"
    assert first.conversation_id is None


def test_side_effect_failures_do_not_fail_the_reply(mongo_db, owner, monkeypatch):
    def broken(db, enquiry_id):
        raise PyMongoError("enquiries offline")

    monkeypatch.setattr(replies, "mark_enquiry_contacted", broken)

    result = send_seller_reply(mongo_db, owner, ReplyRequest(message="hello", enquiryId=str(ObjectId())))

    assert result.side_effects.failed == ["enquiry_contacted"]
    assert mongo_db["messages"].count_documents({"_id": ObjectId(result.message_id)}) == 1


def test_message_insert_failure_is_a_persistence_error(owner):
    class BrokenMessages:
        def insert_one(self, doc):
            raise PyMongoError("primary stepped down")

    with pytest.raises(PersistenceError):
        send_seller_reply({"messages": BrokenMessages()}, owner, ReplyRequest(message="hello"))


def test_thread_reply_notifies_all_participants(mongo_db, owner):
    hub = RealtimeNotifier()
    scheduler = Scheduler()
    buyer_id = str(ObjectId())
    queues = {}

    async def subscribe():
        queues["buyer"] = hub.subscribe(buyer_id)
        queues["seller"] = hub.subscribe(owner.raw)

    asyncio.run(subscribe())
    result = send_seller_reply(
        mongo_db,
        owner,
        ReplyRequest(message="See you at 5", buyerId=buyer_id, propertyId=str(ObjectId())),
        schedule=scheduler,
        notifier=hub,
    )
    assert result.side_effects.outcomes["realtime_emit"] == "scheduled"

    scheduler.run_all()

    event, payload = queues["buyer"].get_nowait()
    assert event == NEW_MESSAGE_EVENT
    assert payload["text"] == "See you at 5"
    assert payload["conversationId"] == result.conversation_id
    assert queues["seller"].qsize() == 1


def test_phone_only_reply_notifies_by_phone(mongo_db, owner):
    hub = RealtimeNotifier()
    scheduler = Scheduler()

    send_seller_reply(mongo_db, owner, ReplyRequest(message="ok", buyerPhone="+911234"), schedule=scheduler, notifier=hub)

    func, args = scheduler.tasks[0]
    assert args[0] == hub.emit_to_user
    assert args[1:3] == ("+911234", NEW_NOTIFICATION_EVENT)


def test_failed_delivery_is_swallowed(mongo_db, owner):
    class BrokenHub(RealtimeNotifier):
        async def emit_to_user(self, user_key, event, payload):
            raise ConnectionError("socket gone")

    hub = BrokenHub()
    scheduler = Scheduler()

    result = send_seller_reply(
        mongo_db, owner, ReplyRequest(message="ok", buyerId=str(ObjectId())), schedule=scheduler, notifier=hub
    )
    scheduler.run_all()

    assert mongo_db["messages"].count_documents({"_id": ObjectId(result.message_id)}) == 1


def test_conversation_index_only_covers_property_threads(mongo_db, owner):
    mongo_db["conversations"].insert_one({"seller": owner.raw, "participants": [owner.raw, "support"]})
    mongo_db["conversations"].insert_one({"seller": owner.raw, "participants": [owner.raw, "admin"]})
    property_id = ObjectId()
    mongo_db["conversations"].insert_one({"property": property_id, "buyer": "b1", "seller": owner.raw})

    with pytest.raises(DuplicateKeyError):
        mongo_db["conversations"].insert_one({"property": property_id, "buyer": "b1", "seller": owner.raw})

    assert mongo_db["conversations"].count_documents({}) == 3

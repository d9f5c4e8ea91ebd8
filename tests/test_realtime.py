import asyncio

from bson import ObjectId

from realtime import NEW_MESSAGE_EVENT, RealtimeNotifier, deliver, format_sse


def test_emit_to_user_reaches_only_that_user():
    hub = RealtimeNotifier()

    async def run():
        mine = hub.subscribe("u1")
        other = hub.subscribe("u2")
        delivered = await hub.emit_to_user("u1", "notification:new", {"message": "hi"})
        return delivered, mine.get_nowait(), other.qsize()

    delivered, received, other_size = asyncio.run(run())

    assert delivered == 1
    assert received == ("notification:new", {"message": "hi"})
    assert other_size == 0


def test_emit_new_message_fans_out_to_participants_once():
    hub = RealtimeNotifier()
    conversation = {"_id": ObjectId(), "participants": ["buyer", "seller", "buyer"]}

    async def run():
        buyer = hub.subscribe("buyer")
        seller = hub.subscribe("seller")
        await hub.emit_new_message(conversation, {"message": "hello"})
        return buyer.get_nowait(), seller.qsize(), buyer.qsize()

    (event, payload), seller_size, buyer_left = asyncio.run(run())

    assert event == NEW_MESSAGE_EVENT
    assert payload["conversationId"] == str(conversation["_id"])
    assert seller_size == 1
    assert buyer_left == 0


def test_full_queue_drops_events_instead_of_blocking():
    hub = RealtimeNotifier(queue_size=1)

    async def run():
        queue = hub.subscribe("u1")
        await hub.emit_to_user("u1", "a", {})
        delivered = await hub.emit_to_user("u1", "b", {})
        return delivered, queue.qsize()

    assert asyncio.run(run()) == (0, 1)


def test_unsubscribe_forgets_the_stream():
    hub = RealtimeNotifier()

    async def run():
        queue = hub.subscribe("u1")
        hub.unsubscribe("u1", queue)
        return await hub.emit_to_user("u1", "a", {})

    assert asyncio.run(run()) == 0
    assert hub.connected("u1") == 0


def test_deliver_swallows_failures():
    async def boom(*args):
        raise RuntimeError("gone")

    assert asyncio.run(deliver(boom, "u1")) is None


def test_format_sse_serializes_ids():
    oid = ObjectId()
    frame = format_sse("message:new", {"_id": oid})
    assert frame == f'event: message:new\ndata: {{"_id": "{oid}"}}\n\n'

"""In-process real-time event hub feeding the dashboard's event stream."""
import asyncio
import json
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Optional, Set

from bson import ObjectId

from database import id_str

logger = logging.getLogger(__name__)

NEW_MESSAGE_EVENT = "message:new"
NEW_NOTIFICATION_EVENT = "notification:new"


def _json_default(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def format_sse(event: str, payload: Dict[str, Any]) -> str:
    """Convert an event payload into Server-Sent Events wire format."""
    message = json.dumps(payload, default=_json_default, ensure_ascii=False)
    return f"event: {event}\ndata: {message}\n\n"


class RealtimeNotifier:
    """Delivers events to connected clients keyed by user id (or phone number).

    Each open stream owns an ``asyncio.Queue``; emitting never blocks and a
    user with no open stream simply misses the event.
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)

    def subscribe(self, user_key: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers[str(user_key)].add(queue)
        return queue

    def unsubscribe(self, user_key: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(str(user_key))
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[str(user_key)]

    def connected(self, user_key: str) -> int:
        return len(self._subscribers.get(str(user_key), ()))

    async def emit_to_user(self, user_key: str, event: str, payload: Dict[str, Any]) -> int:
        delivered = 0
        for queue in list(self._subscribers.get(str(user_key), ())):
            try:
                queue.put_nowait((event, payload))
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("Dropping %s event for %s: stream is not keeping up", event, user_key)
        return delivered

    async def emit_new_message(self, conversation: Dict[str, Any], message: Dict[str, Any]) -> int:
        participants = conversation.get("participants") or [conversation.get("buyer"), conversation.get("seller")]
        payload = dict(message, conversationId=id_str(conversation.get("_id")))
        delivered = 0
        for participant in {id_str(p) for p in participants if p}:
            delivered += await self.emit_to_user(participant, NEW_MESSAGE_EVENT, payload)
        return delivered


async def deliver(emit, *args) -> Optional[int]:
    """Run one emit call, logging instead of raising; used as a fire-and-forget task."""
    try:
        return await emit(*args)
    except Exception:
        logger.exception("Real-time delivery failed")
        return None


notifier = RealtimeNotifier()

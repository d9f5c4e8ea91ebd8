"""
Seller identity matching.

Older records store the owner of a document as a plain string id, newer ones
as an ObjectId, and under several field names. ``OwnerRef`` knows every
encoding of one seller id and builds the queries that find that seller's
records no matter how they were written.
"""
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId

from database import id_str
from errors import InvalidIdentity

# Field names that have meant "this property belongs to the seller".
PROPERTY_OWNER_FIELDS = ("ownerId", "userId", "sellerId")
# Field names that have meant "this notification is addressed to the user".
NOTIFICATION_TARGET_FIELDS = ("userId", "sellerId", "targetUserId")


def id_candidates(value) -> List[Any]:
    """Both encodings of a stored or supplied id: the string, plus its ObjectId when it parses."""
    raw = id_str(value)
    if raw is None:
        return []
    if ObjectId.is_valid(raw):
        return [raw, ObjectId(raw)]
    return [raw]


class OwnerRef:
    def __init__(self, raw_id):
        raw = id_str(raw_id)
        if not raw:
            raise InvalidIdentity("Missing user id")
        self.raw = raw
        self._object_id = ObjectId(raw) if ObjectId.is_valid(raw) else None

    def __repr__(self):
        return "OwnerRef(%r)" % self.raw

    def __str__(self):
        return self.raw

    @property
    def object_id(self) -> ObjectId:
        if self._object_id is None:
            raise InvalidIdentity("User id %s is not a valid ObjectId" % self.raw)
        return self._object_id

    @property
    def values(self) -> List[Any]:
        """Match values: the string always, the ObjectId only when the id parses as one."""
        if self._object_id is None:
            return [self.raw]
        return [self.raw, self._object_id]

    @property
    def native(self):
        """Preferred stored form for new records: ObjectId when possible, else the string."""
        return self._object_id if self._object_id is not None else self.raw

    def match(self, *fields: str) -> Dict[str, Any]:
        """``$or`` predicate: any of ``fields`` equals any encoding of this id."""
        return {"$or": [{field: value} for field in fields for value in self.values]}

    def clauses(self, *fields: str) -> List[Dict[str, Any]]:
        return self.match(*fields)["$or"]

    def is_same(self, value) -> bool:
        return id_str(value) == self.raw

    def in_list(self, values: Optional[Iterable]) -> bool:
        return any(self.is_same(v) for v in values or [])


def resolve_identity(seller_id) -> OwnerRef:
    return OwnerRef(seller_id)

import pytest
from bson import ObjectId

from errors import InvalidIdentity
from identity import PROPERTY_OWNER_FIELDS, id_candidates, resolve_identity


def test_object_id_seller_matches_both_encodings_on_every_field():
    raw = str(ObjectId())
    owner = resolve_identity(raw)

    clauses = owner.clauses(*PROPERTY_OWNER_FIELDS)

    assert len(clauses) == 6
    for field in PROPERTY_OWNER_FIELDS:
        assert {field: raw} in clauses
        assert {field: ObjectId(raw)} in clauses


def test_legacy_string_id_degrades_to_string_matching():
    owner = resolve_identity("seller-42")

    assert owner.values == ["seller-42"]
    assert owner.match("ownerId") == {"$or": [{"ownerId": "seller-42"}]}
    assert owner.native == "seller-42"
    with pytest.raises(InvalidIdentity):
        owner.object_id


def test_is_same_accepts_any_stored_encoding():
    oid = ObjectId()
    owner = resolve_identity(oid)

    assert owner.is_same(oid)
    assert owner.is_same(str(oid))
    assert owner.is_same({"$oid": str(oid)})
    assert not owner.is_same(ObjectId())
    assert owner.in_list(["someone", oid])


def test_missing_id_is_rejected():
    with pytest.raises(InvalidIdentity):
        resolve_identity("")


def test_id_candidates():
    oid = ObjectId()
    assert id_candidates(oid) == [str(oid), oid]
    assert id_candidates("abc") == ["abc"]
    assert id_candidates(None) == []


def test_queries_find_mixed_encodings(mongo_db):
    oid = ObjectId()
    owner = resolve_identity(str(oid))
    mongo_db["properties"].insert_many(
        [
            {"title": "A", "ownerId": str(oid)},
            {"title": "B", "userId": oid},
            {"title": "C", "sellerId": str(oid)},
            {"title": "D", "ownerId": str(ObjectId())},
        ]
    )

    found = mongo_db["properties"].find(owner.match(*PROPERTY_OWNER_FIELDS))

    assert sorted(p["title"] for p in found) == ["A", "B", "C"]

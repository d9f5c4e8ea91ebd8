import pytest
from bson import ObjectId

from conftest import minutes_ago
from errors import InvalidArgument
from notifications import count_unread_notifications, delete_notification, mark_read


def test_mark_read_sets_flag_and_timestamp(mongo_db, owner):
    nid = mongo_db["notifications"].insert_one({"sellerId": owner.object_id, "isRead": False}).inserted_id

    assert mark_read(mongo_db, str(nid), owner) is True

    doc = mongo_db["notifications"].find_one({"_id": nid})
    assert doc["isRead"] is True
    assert doc["readAt"] is not None


def test_mark_read_matches_string_owner_fields(mongo_db, owner):
    nid = mongo_db["notifications"].insert_one({"targetUserId": owner.raw, "isRead": False}).inserted_id

    assert mark_read(mongo_db, str(nid), owner) is True
    assert mongo_db["notifications"].find_one({"_id": nid})["isRead"] is True


def test_mark_read_on_someone_elses_notification_is_a_silent_no_op(mongo_db, owner):
    nid = mongo_db["notifications"].insert_one({"sellerId": ObjectId(), "isRead": False}).inserted_id

    assert mark_read(mongo_db, str(nid), owner) is False
    assert mongo_db["notifications"].find_one({"_id": nid})["isRead"] is False


def test_mark_read_falls_back_to_user_notifications(mongo_db, owner):
    nid = mongo_db["user_notifications"].insert_one({"userId": owner.object_id, "sentAt": minutes_ago(3)}).inserted_id

    assert mark_read(mongo_db, str(nid), owner) is True
    assert mongo_db["user_notifications"].find_one({"_id": nid})["readAt"] is not None


@pytest.mark.parametrize("bad_id", ["", "123", "not-an-object-id"])
def test_malformed_ids_are_invalid_arguments(mongo_db, owner, bad_id):
    with pytest.raises(InvalidArgument):
        mark_read(mongo_db, bad_id, owner)
    with pytest.raises(InvalidArgument):
        delete_notification(mongo_db, bad_id, owner)


def test_delete_is_owner_scoped(mongo_db, owner):
    mine = mongo_db["notifications"].insert_one({"userId": owner.raw}).inserted_id
    theirs = mongo_db["notifications"].insert_one({"userId": str(ObjectId())}).inserted_id

    assert delete_notification(mongo_db, str(mine), owner) is True
    assert delete_notification(mongo_db, str(theirs), owner) is False
    assert delete_notification(mongo_db, str(ObjectId()), owner) is False
    assert mongo_db["notifications"].count_documents({}) == 1


def test_count_unread_notifications(mongo_db, owner):
    mongo_db["notifications"].insert_many(
        [
            {"sellerId": owner.object_id, "isRead": False},
            {"userId": owner.raw, "isRead": False},
            {"sellerId": owner.object_id, "isRead": True},
            {"sellerId": ObjectId(), "isRead": False},
        ]
    )
    assert count_unread_notifications(mongo_db, owner) == 2

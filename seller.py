"""
Seller account operations around the dashboard: listings, packages, payments,
profile and password, package purchase and dashboard stats.
"""
import logging
import secrets
import time
from datetime import timedelta
from typing import Any, Dict, List

from bson import ObjectId

from auth import hash_password, verify_password
from database import create_document, get_documents, utcnow
from errors import InvalidArgument, NotFound, ValidationError
from identity import PROPERTY_OWNER_FIELDS, OwnerRef
from inbox import seller_properties
from notifications import count_unread_notifications, create_seller_notification
from schemas import PasswordChange, Payment, ProfileUpdate, PurchaseRequest

logger = logging.getLogger(__name__)

SAMPLE_PACKAGES = [
    {
        "name": "Basic Plan",
        "price": 999,
        "features": [
            "Post up to 5 properties",
            "Basic listing visibility",
            "Email support",
            "Valid for 30 days",
        ],
        "duration": 30,
        "type": "basic",
    },
    {
        "name": "Premium Plan",
        "price": 2499,
        "features": [
            "Post up to 15 properties",
            "Featured listing placement",
            "Priority in search results",
            "Phone & email support",
            "Property promotion tools",
            "Valid for 60 days",
        ],
        "duration": 60,
        "type": "premium",
    },
    {
        "name": "Elite Plan",
        "price": 4999,
        "features": [
            "Unlimited property postings",
            "Top featured placement",
            "Premium badge on profile",
            "Dedicated account manager",
            "Advanced analytics",
            "Priority customer support",
            "Valid for 90 days",
        ],
        "duration": 90,
        "type": "elite",
    },
]


def _property_id(property_id: str) -> ObjectId:
    if not ObjectId.is_valid(property_id):
        raise InvalidArgument("Invalid property ID")
    return ObjectId(property_id)


def list_properties(db, owner: OwnerRef) -> List[dict]:
    return seller_properties(db, owner)


def list_packages(db) -> List[dict]:
    query = {"$or": [{"targetUserType": "seller"}, {"category": "advertisement"}]}
    packages = get_documents(db, "packages", query)
    if packages:
        return packages

    now = utcnow()
    packages = [dict(item, targetUserType="seller", isActive=True, createdAt=now) for item in SAMPLE_PACKAGES]
    result = db["packages"].insert_many(packages)
    for doc, inserted_id in zip(packages, result.inserted_ids):
        doc["_id"] = inserted_id
    logger.info("Seeded %d sample seller packages", len(packages))
    return packages


def list_payments(db, owner: OwnerRef) -> List[dict]:
    query = {
        "$or": [{"userId": value, "userType": "seller"} for value in owner.values]
        + owner.clauses("sellerId")
    }
    return get_documents(db, "payments", query, sort_field="createdAt")


def update_profile(db, owner: OwnerRef, body: ProfileUpdate) -> None:
    if not body.name or not body.email:
        raise ValidationError("Name and email are required")

    existing = db["users"].find_one({"email": body.email, "_id": {"$ne": owner.object_id}})
    if existing:
        raise ValidationError("Email already exists")

    db["users"].update_one(
        {"_id": owner.object_id},
        {
            "$set": {
                "name": body.name,
                "email": body.email,
                "phone": body.phone,
                "emailNotifications": True if body.emailNotifications is None else body.emailNotifications,
                "pushNotifications": True if body.pushNotifications is None else body.pushNotifications,
                "updatedAt": utcnow(),
            }
        },
    )


def change_password(db, owner: OwnerRef, body: PasswordChange) -> None:
    if not body.currentPassword or not body.newPassword:
        raise ValidationError("Current password and new password are required")

    user = db["users"].find_one({"_id": owner.object_id})
    if not user:
        raise NotFound("User not found")
    if not verify_password(body.currentPassword, user.get("password", "")):
        raise ValidationError("Current password is incorrect")

    db["users"].update_one(
        {"_id": owner.object_id},
        {"$set": {"password": hash_password(body.newPassword), "updatedAt": utcnow()}},
    )


def _transaction_id() -> str:
    return "TXN%d%s" % (int(time.time() * 1000), secrets.token_hex(3)[:5].upper())


def purchase_package(db, owner: OwnerRef, body: PurchaseRequest) -> Dict[str, Any]:
    if not body.packageId or not ObjectId.is_valid(body.packageId):
        raise InvalidArgument("Invalid package ID")
    package_id = ObjectId(body.packageId)

    package = db["packages"].find_one({"_id": package_id})
    if not package:
        raise NotFound("Package not found")

    now = utcnow()
    payment = Payment(
        sellerId=owner.native,
        packageId=package_id,
        package=package["name"],
        amount=package["price"],
        paymentMethod=body.paymentMethod or "online",
        transactionId=_transaction_id(),
        date=now,
        createdAt=now,
    ).model_dump()
    create_document(db, "payments", payment)

    db["users"].update_one(
        {"_id": owner.object_id},
        {
            "$set": {
                "currentPackage": package["name"],
                "packageType": package.get("type"),
                "packageExpiresAt": now + timedelta(days=package.get("duration") or 0),
                "isPremium": package.get("type") != "basic",
                "updatedAt": now,
            }
        },
    )

    create_seller_notification(
        db,
        owner,
        "Package Purchase Successful",
        "You have successfully purchased the %s. Your account has been upgraded!" % package["name"],
        type="account",
    )

    return {
        "transactionId": payment["transactionId"],
        "package": package["name"],
        "amount": package["price"],
    }


def seller_stats(db, owner: OwnerRef) -> Dict[str, Any]:
    properties = seller_properties(db, owner)

    unread_chat = db["property_inquiries"].count_documents({**owner.match("sellerId"), "isRead": False})
    property_keys = [key for p in properties for key in (str(p["_id"]), p["_id"])]
    unread_enquiries = db["enquiries"].count_documents({"propertyId": {"$in": property_keys}, "status": "new"})

    def with_status(status):
        return sum(1 for p in properties if p.get("approvalStatus") == status)

    return {
        "totalProperties": len(properties),
        "pendingApproval": with_status("pending"),
        "approved": with_status("approved"),
        "rejected": with_status("rejected"),
        "totalViews": sum(p.get("views") or 0 for p in properties),
        "totalInquiries": sum(p.get("inquiries") or 0 for p in properties),
        "unreadNotifications": count_unread_notifications(db, owner),
        "unreadMessages": unread_chat + unread_enquiries,
        "premiumListings": sum(1 for p in properties if p.get("isPremium") or p.get("premium")),
    }


def delete_property(db, owner: OwnerRef, property_id: str) -> None:
    result = db["properties"].delete_one({"_id": _property_id(property_id), **owner.match(*PROPERTY_OWNER_FIELDS)})
    if not result.deleted_count:
        raise NotFound("Property not found or not owned by user")


def resubmit_property(db, owner: OwnerRef, property_id: str) -> None:
    result = db["properties"].update_one(
        {"_id": _property_id(property_id), **owner.match(*PROPERTY_OWNER_FIELDS)},
        {
            "$set": {
                "approvalStatus": "pending",
                "rejectionReason": "",
                "adminComments": "",
                "updatedAt": utcnow(),
            },
            "$unset": {"approvedAt": "", "approvedBy": ""},
        },
    )
    if not result.matched_count:
        raise NotFound("Property not found or not owned by user")

"""
Seller Dashboard - Database Schemas

Collection models describe the documents this service writes. Field names
follow the camelCase the marketplace collections already use:
- Notification -> notifications
- Conversation -> conversations
- Message -> messages
- Payment -> payments

The remaining models are API shapes: request bodies and the derived feed and
inbox items, which are recomputed on every read and never stored.
"""
from datetime import datetime
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field

SenderRole = Literal["buyer", "seller", "admin"]
MessageSource = Literal["chat", "enquiry", "direct", "seller_reply"]


# Collections
class Notification(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    sellerId: Any
    userId: Optional[Any] = None
    title: str
    message: str
    type: str = "admin_notification"
    priority: str = "normal"
    isRead: bool = False
    createdAt: datetime
    senderType: SenderRole = "admin"


class Conversation(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    property: Any = Field(..., description="Property _id as ObjectId")
    buyer: str
    seller: str
    participants: List[str]
    createdAt: datetime
    updatedAt: datetime
    lastMessageAt: datetime


class Message(BaseModel):
    senderId: str
    senderType: SenderRole
    message: str = Field(..., min_length=1)
    createdAt: datetime
    isRead: bool = False
    source: MessageSource = "direct"
    receiverId: Optional[str] = None
    receiverPhone: Optional[str] = None
    propertyId: Optional[str] = None
    enquiryId: Optional[str] = None
    conversationId: Optional[str] = None


class Payment(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    sellerId: Any
    packageId: Any
    package: str
    amount: float = Field(..., ge=0)
    paymentMethod: str = "online"
    status: Literal["pending", "completed", "failed"] = "completed"
    transactionId: str
    date: datetime
    createdAt: datetime


# Derived views
class UnifiedFeedItem(BaseModel):
    id: str
    title: str
    message: Optional[str] = None
    type: str
    sender_role: str
    sender_name: str
    isRead: bool = False
    createdAt: datetime
    source: Literal["admin_notification", "user_notification", "conversation", "direct_message"]
    priority: str = "normal"
    propertyId: Optional[str] = None
    propertyTitle: Optional[str] = None
    conversationId: Optional[str] = None
    unreadCount: Optional[int] = None


class UnifiedMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., alias="_id")
    buyerId: Optional[str] = None
    buyerName: str
    buyerEmail: str = ""
    buyerPhone: str = ""
    message: str = ""
    propertyId: Optional[str] = None
    propertyTitle: str = ""
    propertyPrice: Union[float, str] = 0
    timestamp: datetime
    isRead: bool = False
    source: str
    conversationId: Optional[str] = None
    enquiryId: Optional[str] = None


# Requests
class ReplyRequest(BaseModel):
    message: Optional[str] = None
    enquiryId: Optional[str] = None
    buyerId: Optional[str] = None
    buyerPhone: Optional[str] = None
    propertyId: Optional[str] = None


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    emailNotifications: Optional[bool] = None
    pushNotifications: Optional[bool] = None


class PasswordChange(BaseModel):
    currentPassword: Optional[str] = None
    newPassword: Optional[str] = None


class PurchaseRequest(BaseModel):
    packageId: Optional[str] = None
    paymentMethod: Optional[str] = None

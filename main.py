import asyncio
from contextlib import asynccontextmanager

from bson import ObjectId
from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import seller
from auth import get_current_seller, get_stream_seller
from config import settings
from database import db, ensure_indexes, get_db, storage_errors
from errors import SellerApiError
from feed import build_feed
from identity import OwnerRef
from inbox import build_inbox
from logging_setup import logger
from notifications import delete_notification, mark_read
from realtime import format_sse, notifier
from replies import send_seller_reply
from schemas import PasswordChange, ProfileUpdate, PurchaseRequest, ReplyRequest


@asynccontextmanager
async def lifespan(_: FastAPI):
    ensure_indexes(db)
    logger.info("%s started", settings.project_name)
    yield


app = FastAPI(title=settings.project_name, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error envelope
def _failure(status_code: int, error: str, headers=None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error}, headers=headers)


@app.exception_handler(SellerApiError)
async def seller_error_handler(_: Request, exc: SellerApiError):
    return _failure(exc.status_code, exc.message)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        location = ".".join(str(part) for part in errors[0].get("loc", ()) if part != "body")
        message = errors[0].get("msg", "Invalid request")
        return _failure(400, f"{location}: {message}" if location else message)
    return _failure(400, "Invalid request")


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(_: Request, exc: StarletteHTTPException):
    return _failure(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _failure(500, "Internal server error")


def to_json(docs):
    return jsonable_encoder(docs, custom_encoder={ObjectId: str})


@app.get("/")
def root():
    return {"message": settings.project_name}


@app.get("/health")
def health(database=Depends(get_db)):
    response = {"backend": "running", "database": "unavailable"}
    try:
        database.command("ping")
        response["database"] = "connected"
    except PyMongoError as e:
        response["database"] = f"error: {str(e)[:50]}"
    return response


# Properties
@app.get("/seller/properties")
def get_seller_properties(owner: OwnerRef = Depends(get_current_seller), database=Depends(get_db)):
    with storage_errors("Failed to fetch properties"):
        properties = seller.list_properties(database, owner)
    return {"success": True, "data": to_json(properties)}


@app.delete("/seller/properties/{property_id}")
def delete_seller_property(property_id: str, owner: OwnerRef = Depends(get_current_seller), database=Depends(get_db)):
    with storage_errors("Failed to delete property"):
        seller.delete_property(database, owner, property_id)
    return {"success": True, "message": "Property deleted"}


@app.post("/seller/properties/{property_id}/resubmit")
def resubmit_seller_property(property_id: str, owner: OwnerRef = Depends(get_current_seller), database=Depends(get_db)):
    with storage_errors("Failed to resubmit property"):
        seller.resubmit_property(database, owner, property_id)
    return {"success": True, "message": "Property resubmitted for review"}


# Notifications
@app.get("/seller/notifications")
def get_seller_notifications(owner: OwnerRef = Depends(get_current_seller), database=Depends(get_db)):
    with storage_errors("Failed to fetch notifications"):
        items = build_feed(database, owner)
    return {
        "success": True,
        "data": [item.model_dump(mode="json") for item in items],
        "total": len(items),
        "unreadCount": sum(1 for item in items if not item.isRead),
    }


@app.put("/seller/notifications/{notification_id}/read")
def mark_notification_as_read(notification_id: str, owner: OwnerRef = Depends(get_current_seller), database=Depends(get_db)):
    with storage_errors("Failed to mark notification as read"):
        mark_read(database, notification_id, owner)
    return {"success": True, "message": "Notification marked as read"}


@app.delete("/seller/notifications/{notification_id}")
def delete_seller_notification(notification_id: str, owner: OwnerRef = Depends(get_current_seller), database=Depends(get_db)):
    with storage_errors("Failed to delete notification"):
        delete_notification(database, notification_id, owner)
    return {"success": True, "message": "Notification deleted"}


# Messages
@app.get("/seller/messages")
def get_seller_messages(owner: OwnerRef = Depends(get_current_seller), database=Depends(get_db)):
    with storage_errors("Failed to fetch messages"):
        items = build_inbox(database, owner)
    return {"success": True, "data": [item.model_dump(mode="json", by_alias=True) for item in items]}


@app.post("/seller/messages", status_code=201)
def send_seller_message(
    body: ReplyRequest,
    background_tasks: BackgroundTasks,
    owner: OwnerRef = Depends(get_current_seller),
    database=Depends(get_db),
):
    result = send_seller_reply(database, owner, body, schedule=background_tasks.add_task)
    if result.side_effects.failed:
        logger.warning("Reply %s saved; side effects failed: %s", result.message_id, ", ".join(result.side_effects.failed))
    return {
        "success": True,
        "data": {"messageId": result.message_id, "conversationId": result.conversation_id},
    }


@app.get("/seller/stream")
async def seller_stream(request: Request, owner: OwnerRef = Depends(get_stream_seller)):
    queue = notifier.subscribe(owner.raw)
    logger.info("Stream opened for %s (%d open)", owner, notifier.connected(owner.raw))

    async def events():
        try:
            yield format_sse("connected", {"userId": owner.raw})
            while not await request.is_disconnected():
                try:
                    event, payload = await asyncio.wait_for(queue.get(), timeout=settings.stream_keepalive_seconds)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield format_sse(event, payload)
        finally:
            notifier.unsubscribe(owner.raw, queue)

    return StreamingResponse(events(), media_type="text/event-stream", headers={"Cache-Control": "no-cache"})


# Packages & payments
@app.get("/seller/packages")
def get_seller_packages(owner: OwnerRef = Depends(get_current_seller), database=Depends(get_db)):
    with storage_errors("Failed to fetch packages"):
        packages = seller.list_packages(database)
    return {"success": True, "data": to_json(packages)}


@app.get("/seller/payments")
def get_seller_payments(owner: OwnerRef = Depends(get_current_seller), database=Depends(get_db)):
    with storage_errors("Failed to fetch payments"):
        payments = seller.list_payments(database, owner)
    return {"success": True, "data": to_json(payments)}


@app.post("/seller/purchase-package")
def purchase_package(body: PurchaseRequest, owner: OwnerRef = Depends(get_current_seller), database=Depends(get_db)):
    with storage_errors("Failed to purchase package"):
        data = seller.purchase_package(database, owner, body)
    return {"success": True, "message": "Package purchased successfully", "data": to_json(data)}


# Profile
@app.put("/seller/profile")
def update_seller_profile(body: ProfileUpdate, owner: OwnerRef = Depends(get_current_seller), database=Depends(get_db)):
    with storage_errors("Failed to update profile"):
        seller.update_profile(database, owner, body)
    return {"success": True, "message": "Profile updated successfully"}


@app.put("/seller/change-password")
def change_seller_password(body: PasswordChange, owner: OwnerRef = Depends(get_current_seller), database=Depends(get_db)):
    with storage_errors("Failed to change password"):
        seller.change_password(database, owner, body)
    return {"success": True, "message": "Password changed successfully"}


@app.get("/seller/stats")
def get_seller_stats(owner: OwnerRef = Depends(get_current_seller), database=Depends(get_db)):
    with storage_errors("Failed to fetch stats"):
        stats = seller.seller_stats(database, owner)
    return {"success": True, "data": stats}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)

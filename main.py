import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Literal, Optional

import socketio
from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import auth
from auth import get_current_user
from chats import ChatService
from config import Settings, get_settings
from database import db as default_db, ensure_indexes, get_db, serialize_doc
from discussions import DiscussionService
from errors import ServiceError
from orders import OrderService
from policies import AccessPolicy
from ratings import RatingService
from realtime import RealtimeChannel, SocketHandlers, create_socket_server
from schemas import (
    AnswerCreate,
    ChatMessageCreate,
    DirectChatCreate,
    DiscussionMessageCreate,
    GearCreate,
    GroupChatCreate,
    HelpfulVote,
    ItineraryUpdate,
    OrderCancel,
    OrderCreate,
    OrderStatusUpdate,
    RatingCreate,
    RatingReport,
    RefundRequest,
    TripCreate,
    TripUpdate,
    TypingStatus,
    UserCreate,
    UserLogin,
)
from trips import TripService

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

sio = create_socket_server(settings.cors_origins)
channel = RealtimeChannel(sio)
policy = AccessPolicy.from_settings(settings)
SocketHandlers(sio, get_db, policy).register()


@asynccontextmanager
async def lifespan(app: FastAPI):
    channel.bind_loop(asyncio.get_running_loop())
    try:
        ensure_indexes(default_db)
    except PyMongoError as e:
        logger.error(f"Could not ensure indexes: {e}")
    yield


app = FastAPI(title="Trip Collaboration API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -------------------------
# Envelope & error handling
# -------------------------

def ok(data: Any = None, message: Optional[str] = None) -> dict:
    body: dict = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = serialize_doc(data)
    return body


def fail(status_code: int, message: str, errors: Optional[list] = None) -> JSONResponse:
    body: dict = {"success": False, "message": message}
    if errors:
        body["errors"] = errors
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return fail(exc.status_code, exc.message, exc.errors)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        errors.append(f"{field}: {err.get('msg')}" if field else err.get("msg"))
    return fail(400, "Validation failed", errors)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return fail(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return fail(500, "Server error")


# -------------------------
# Dependencies
# -------------------------

def get_channel() -> RealtimeChannel:
    return channel


def get_policy() -> AccessPolicy:
    return policy


def get_discussion_service(
    db: Database = Depends(get_db),
    channel: RealtimeChannel = Depends(get_channel),
    policy: AccessPolicy = Depends(get_policy),
    settings: Settings = Depends(get_settings),
) -> DiscussionService:
    return DiscussionService(db, channel, policy, settings)


def get_chat_service(
    db: Database = Depends(get_db),
    channel: RealtimeChannel = Depends(get_channel),
    policy: AccessPolicy = Depends(get_policy),
    settings: Settings = Depends(get_settings),
) -> ChatService:
    return ChatService(db, channel, policy, settings)


def get_trip_service(
    db: Database = Depends(get_db),
    discussions: DiscussionService = Depends(get_discussion_service),
    channel: RealtimeChannel = Depends(get_channel),
    policy: AccessPolicy = Depends(get_policy),
    settings: Settings = Depends(get_settings),
) -> TripService:
    return TripService(db, discussions, channel, policy, settings)


def get_rating_service(db: Database = Depends(get_db), settings: Settings = Depends(get_settings)) -> RatingService:
    return RatingService(db, settings)


def get_order_service(db: Database = Depends(get_db), policy: AccessPolicy = Depends(get_policy)) -> OrderService:
    return OrderService(db, policy)


# -------------------------
# Health & basic routes
# -------------------------

@app.get("/")
def read_root():
    return {"message": "Trip Collaboration API running"}


@app.get("/test")
def test_database(db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if settings.database_url else "❌ Not Set"
            response["database_name"] = db.name if hasattr(db, "name") else "Unknown"
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
        else:
            response["database"] = "⚠️ Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# -------------------------
# Auth
# -------------------------

@app.post("/api/auth/register", status_code=201)
def register(payload: UserCreate, db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    return ok(auth.register(db, payload, settings), "Registration successful")


@app.post("/api/auth/login")
def login(payload: UserLogin, db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    return ok(auth.login(db, payload, settings), "Login successful")


@app.get("/api/auth/me")
def me(user: dict = Depends(get_current_user)):
    return ok({"user": auth.to_public(user)})


# -------------------------
# Trips
# -------------------------

@app.post("/api/trips", status_code=201)
def create_trip(payload: TripCreate, user: dict = Depends(get_current_user), trips: TripService = Depends(get_trip_service)):
    return ok({"trip": trips.create_trip(user, payload)}, "Trip submitted for approval")


@app.get("/api/trips")
def list_trips(
    search: Optional[str] = None,
    destination: Optional[str] = None,
    tag: Optional[str] = None,
    trip_type: Optional[str] = None,
    difficulty: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    trips: TripService = Depends(get_trip_service),
):
    return ok(trips.list_trips(search, destination, tag, trip_type, difficulty, start_date, end_date, page, limit))


@app.get("/api/trips/pending")
def pending_trips(user: dict = Depends(get_current_user), trips: TripService = Depends(get_trip_service)):
    return ok({"trips": trips.get_pending_trips(user)})


@app.get("/api/trips/user/trips")
def user_trips(
    kind: Literal["all", "organized", "joined"] = Query("all", alias="type"),
    user: dict = Depends(get_current_user),
    trips: TripService = Depends(get_trip_service),
):
    return ok({"trips": trips.get_user_trips(user, kind)})


@app.get("/api/trips/{trip_id}")
def get_trip(trip_id: str, trips: TripService = Depends(get_trip_service)):
    return ok({"trip": trips.get_trip(trip_id)})


@app.put("/api/trips/{trip_id}")
def update_trip(trip_id: str, payload: TripUpdate, user: dict = Depends(get_current_user), trips: TripService = Depends(get_trip_service)):
    return ok({"trip": trips.update_trip(trip_id, user, payload)}, "Trip updated successfully")


@app.delete("/api/trips/{trip_id}")
def delete_trip(trip_id: str, user: dict = Depends(get_current_user), trips: TripService = Depends(get_trip_service)):
    trips.delete_trip(trip_id, user)
    return ok(message="Trip deleted successfully")


@app.post("/api/trips/{trip_id}/approve")
def approve_trip(trip_id: str, user: dict = Depends(get_current_user), trips: TripService = Depends(get_trip_service)):
    return ok({"trip": trips.approve_trip(trip_id, user)}, "Trip approved")


@app.post("/api/trips/{trip_id}/join")
def join_trip(trip_id: str, user: dict = Depends(get_current_user), trips: TripService = Depends(get_trip_service)):
    return ok({"trip": trips.join_trip(trip_id, user)}, "Successfully joined the trip")


@app.post("/api/trips/{trip_id}/leave")
def leave_trip(trip_id: str, user: dict = Depends(get_current_user), trips: TripService = Depends(get_trip_service)):
    trips.leave_trip(trip_id, user)
    return ok(message="Successfully left the trip")


@app.put("/api/trips/{trip_id}/itinerary")
def update_itinerary(
    trip_id: str,
    payload: ItineraryUpdate,
    user: dict = Depends(get_current_user),
    trips: TripService = Depends(get_trip_service),
):
    return ok({"trip": trips.update_itinerary(trip_id, user, payload.itinerary)}, "Itinerary updated successfully")


# -------------------------
# Trip discussions
# -------------------------

@app.get("/api/discussions/trip/{trip_id}")
def get_discussion(
    trip_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    user: dict = Depends(get_current_user),
    discussions: DiscussionService = Depends(get_discussion_service),
):
    return ok(discussions.get_discussion(trip_id, user, page, limit))


@app.post("/api/discussions/trip/{trip_id}/messages", status_code=201)
def send_discussion_message(
    trip_id: str,
    payload: DiscussionMessageCreate,
    user: dict = Depends(get_current_user),
    discussions: DiscussionService = Depends(get_discussion_service),
):
    message = discussions.send_message(trip_id, user, payload.content, payload.message_type)
    return ok({"message": message}, "Message sent successfully")


@app.post("/api/discussions/trip/{trip_id}/typing")
def update_typing_status(
    trip_id: str,
    payload: TypingStatus,
    user: dict = Depends(get_current_user),
    discussions: DiscussionService = Depends(get_discussion_service),
):
    discussions.update_typing_status(trip_id, user, payload.is_typing)
    return ok(message="Typing status updated")


@app.post("/api/discussions/trip/{trip_id}/active")
def mark_user_active(
    trip_id: str,
    user: dict = Depends(get_current_user),
    discussions: DiscussionService = Depends(get_discussion_service),
):
    discussions.mark_user_active(trip_id, user)
    return ok(message="User marked as active")


# -------------------------
# Chats & Q&A
# -------------------------

@app.post("/api/chats/direct")
def create_direct_chat(
    payload: DirectChatCreate,
    response: Response,
    user: dict = Depends(get_current_user),
    chats: ChatService = Depends(get_chat_service),
):
    chat, created = chats.create_direct_chat(user, payload.participant_id)
    response.status_code = 201 if created else 200
    return ok({"chat": chat}, "Chat created successfully" if created else "Chat already exists")


@app.post("/api/chats/group", status_code=201)
def create_group_chat(payload: GroupChatCreate, user: dict = Depends(get_current_user), chats: ChatService = Depends(get_chat_service)):
    chat = chats.create_group_chat(user, payload.name, payload.participant_ids, payload.trip_id)
    return ok({"chat": chat}, "Chat created successfully")


@app.get("/api/chats")
def user_chats(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: dict = Depends(get_current_user),
    chats: ChatService = Depends(get_chat_service),
):
    return ok(chats.get_user_chats(user, page, limit))


@app.get("/api/chats/qa/{trip_id}")
def qa_messages(
    trip_id: str,
    answered: Literal["all", "true", "false"] = "all",
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: dict = Depends(get_current_user),
    chats: ChatService = Depends(get_chat_service),
):
    return ok(chats.get_qa_messages(trip_id, answered, page, limit))


@app.post("/api/chats/messages/{message_id}/answer")
def answer_question(
    message_id: str,
    payload: AnswerCreate,
    user: dict = Depends(get_current_user),
    chats: ChatService = Depends(get_chat_service),
):
    return ok({"message": chats.answer_question(message_id, user, payload.answer)}, "Question answered successfully")


@app.delete("/api/chats/messages/{message_id}")
def delete_chat_message(message_id: str, user: dict = Depends(get_current_user), chats: ChatService = Depends(get_chat_service)):
    chats.delete_message(message_id, user)
    return ok(message="Message deleted successfully")


@app.get("/api/chats/{chat_id}")
def chat_details(chat_id: str, user: dict = Depends(get_current_user), chats: ChatService = Depends(get_chat_service)):
    return ok({"chat": chats.get_chat_details(chat_id, user)})


@app.get("/api/chats/{chat_id}/messages")
def chat_messages(
    chat_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    user: dict = Depends(get_current_user),
    chats: ChatService = Depends(get_chat_service),
):
    return ok(chats.get_chat_messages(chat_id, user, page, limit))


@app.post("/api/chats/{chat_id}/messages", status_code=201)
def send_chat_message(
    chat_id: str,
    payload: ChatMessageCreate,
    user: dict = Depends(get_current_user),
    chats: ChatService = Depends(get_chat_service),
):
    message = chats.send_message(chat_id, user, payload.content, payload.message_type)
    return ok({"message": message}, "Message sent successfully")


@app.put("/api/chats/{chat_id}/read")
def mark_chat_read(chat_id: str, user: dict = Depends(get_current_user), chats: ChatService = Depends(get_chat_service)):
    return ok({"updated": chats.mark_as_read(chat_id, user)}, "Messages marked as read")


# -------------------------
# Ratings
# -------------------------

@app.post("/api/ratings")
def create_rating(
    payload: RatingCreate,
    response: Response,
    user: dict = Depends(get_current_user),
    ratings: RatingService = Depends(get_rating_service),
):
    rating, created = ratings.create_rating(user, payload)
    response.status_code = 201 if created else 200
    return ok({"rating": rating}, "Rating created successfully" if created else "Rating updated successfully")


@app.get("/api/ratings/user/ratings")
def user_ratings(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: dict = Depends(get_current_user),
    ratings: RatingService = Depends(get_rating_service),
):
    return ok(ratings.get_user_ratings(user, page, limit))


@app.get("/api/ratings/{target_type}/{target_id}")
def list_ratings(
    target_type: Literal["guide", "trip"],
    target_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort: Literal["newest", "helpful", "rating-high", "rating-low"] = "newest",
    ratings: RatingService = Depends(get_rating_service),
):
    return ok(ratings.get_ratings(target_type, target_id, page, limit, sort))


@app.post("/api/ratings/{rating_id}/vote")
def vote_helpful(
    rating_id: str,
    payload: HelpfulVote,
    user: dict = Depends(get_current_user),
    ratings: RatingService = Depends(get_rating_service),
):
    return ok({"helpful_votes": ratings.vote_helpful(rating_id, payload.is_helpful)}, "Vote recorded successfully")


@app.post("/api/ratings/{rating_id}/report")
def report_rating(
    rating_id: str,
    payload: RatingReport,
    user: dict = Depends(get_current_user),
    ratings: RatingService = Depends(get_rating_service),
):
    ratings.report_rating(rating_id, payload.reason)
    return ok(message="Rating reported successfully")


# -------------------------
# Gear & orders
# -------------------------

@app.post("/api/gear", status_code=201)
def create_gear(payload: GearCreate, user: dict = Depends(get_current_user), orders: OrderService = Depends(get_order_service)):
    return ok({"gear": orders.create_gear(user, payload)}, "Gear listed successfully")


@app.get("/api/gear")
def list_gear(owner_id: Optional[str] = None, orders: OrderService = Depends(get_order_service)):
    return ok({"gear": orders.list_gear(owner_id)})


@app.post("/api/orders", status_code=201)
def create_order(payload: OrderCreate, user: dict = Depends(get_current_user), orders: OrderService = Depends(get_order_service)):
    return ok({"order": orders.create_order(user, payload)}, "Order created successfully")


@app.get("/api/orders/user/orders")
def user_orders(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: dict = Depends(get_current_user),
    orders: OrderService = Depends(get_order_service),
):
    return ok(orders.get_user_orders(user, status, page, limit))


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user), orders: OrderService = Depends(get_order_service)):
    return ok({"order": orders.get_order(order_id, user)})


@app.put("/api/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: OrderStatusUpdate,
    user: dict = Depends(get_current_user),
    orders: OrderService = Depends(get_order_service),
):
    return ok({"order": orders.update_order_status(order_id, user, payload)}, "Order status updated successfully")


@app.put("/api/orders/{order_id}/cancel")
def cancel_order(
    order_id: str,
    payload: OrderCancel,
    user: dict = Depends(get_current_user),
    orders: OrderService = Depends(get_order_service),
):
    return ok({"order": orders.cancel_order(order_id, user, payload.reason)}, "Order cancelled successfully")


@app.post("/api/orders/{order_id}/refund")
def process_refund(
    order_id: str,
    payload: RefundRequest,
    user: dict = Depends(get_current_user),
    orders: OrderService = Depends(get_order_service),
):
    order = orders.process_refund(order_id, user, payload.amount, payload.reason)
    return ok({"order": order}, "Refund processed successfully")


# Socket.IO in front of the REST app; uvicorn serves this object
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", settings.port))
    uvicorn.run(socket_app, host="0.0.0.0", port=port)

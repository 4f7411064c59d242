"""
Database and request schemas for the Trip Collaboration API

Each Pydantic model below the "Collection" banners represents a MongoDB
collection. Collection name is the lowercase of the class name
(e.g., Trip -> "trip"). Request models are validated by FastAPI before a
service ever sees them.
"""

from datetime import date, datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field

# -------------------------
# Users & sessions
# -------------------------

UserRole = Literal["traveler", "guide", "admin"]


class UserCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=80)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Literal["traveler", "guide"] = "traveler"
    bio: Optional[str] = Field(None, max_length=500)


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class UserPublic(BaseModel):
    id: str
    name: str
    email: EmailStr
    role: UserRole = "traveler"
    avatar_url: Optional[str] = None


# -------------------------
# Trips (collection: "trip")
# -------------------------

TripStatus = Literal["planning", "active", "completed", "cancelled"]


class Budget(BaseModel):
    min: Optional[float] = Field(None, ge=0)
    max: Optional[float] = Field(None, ge=0)
    currency: str = "USD"


class Activity(BaseModel):
    title: str = Field(..., min_length=1)
    time: Optional[str] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    added_by: Optional[str] = Field(None, description="User ID; stamped by the server when missing")
    added_at: Optional[datetime] = None


class ItineraryDay(BaseModel):
    day: int = Field(..., ge=1)
    title: Optional[str] = None
    activities: List[Activity] = Field(default_factory=list)


class CollaborativeFeatures(BaseModel):
    allow_discussions: bool = True
    allow_itinerary_editing: bool = True


class TripCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=120, description="Short title for the trip")
    description: Optional[str] = Field(None, max_length=2000)
    destination: str = Field(..., description="Primary destination or route")
    start_date: date
    end_date: date
    max_participants: int = Field(..., ge=1, description="Capacity, organizer excluded")
    budget: Optional[Budget] = None
    difficulty: Optional[Literal["easy", "moderate", "challenging", "expert"]] = None
    trip_type: Optional[str] = None
    tags: List[str] = Field(default_factory=list, description="Tags like hiking, eco, island")
    requirements: List[str] = Field(default_factory=list)
    is_public: bool = True
    collaborative_features: CollaborativeFeatures = Field(default_factory=CollaborativeFeatures)


class TripUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=120)
    description: Optional[str] = Field(None, max_length=2000)
    destination: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    max_participants: Optional[int] = Field(None, ge=1)
    budget: Optional[Budget] = None
    difficulty: Optional[Literal["easy", "moderate", "challenging", "expert"]] = None
    trip_type: Optional[str] = None
    tags: Optional[List[str]] = None
    requirements: Optional[List[str]] = None
    is_public: Optional[bool] = None
    status: Optional[TripStatus] = None
    collaborative_features: Optional[CollaborativeFeatures] = None


class ItineraryUpdate(BaseModel):
    itinerary: List[ItineraryDay]


# -------------------------
# Discussions (collection: "discussion")
# -------------------------

class UserAction(BaseModel):
    action: Literal["joined", "left"]
    user_name: str


class ItineraryChange(BaseModel):
    action: Literal["added", "updated", "removed"]
    day: Optional[int] = None
    activity: Optional[str] = None


class SystemNotice(BaseModel):
    message_type: Literal["system"] = "system"


class UserJoinedNotice(BaseModel):
    message_type: Literal["user_joined"] = "user_joined"
    user_action: UserAction


class UserLeftNotice(BaseModel):
    message_type: Literal["user_left"] = "user_left"
    user_action: UserAction


class ItineraryUpdateNotice(BaseModel):
    message_type: Literal["itinerary_update"] = "itinerary_update"
    itinerary_change: ItineraryChange


# Metadata of a system-authored discussion message, one variant per type
SystemEvent = Annotated[
    Union[SystemNotice, UserJoinedNotice, UserLeftNotice, ItineraryUpdateNotice],
    Field(discriminator="message_type"),
]


class DiscussionMessageCreate(BaseModel):
    content: str = Field(..., description="Message text, at most 1000 characters once trimmed")
    # system types are produced by trip lifecycle events only
    message_type: Literal["text"] = "text"


class TypingStatus(BaseModel):
    is_typing: bool


# -------------------------
# Chats (collections: "chat", "message")
# -------------------------

ChatMessageType = Literal["text", "question", "image", "file"]


class DirectChatCreate(BaseModel):
    participant_id: str = Field(..., min_length=1)


class GroupChatCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    participant_ids: List[str] = Field(..., min_length=1)
    trip_id: Optional[str] = None


class ChatMessageCreate(BaseModel):
    content: str
    message_type: ChatMessageType = "text"


class AnswerCreate(BaseModel):
    answer: str


# -------------------------
# Ratings (collection: "rating")
# -------------------------

RatingTarget = Literal["guide", "trip"]


class RatingCreate(BaseModel):
    target_type: RatingTarget
    target_id: str
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = Field(None, max_length=1000)


class HelpfulVote(BaseModel):
    is_helpful: bool = True


class RatingReport(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


# -------------------------
# Gear & orders (collections: "gear", "order")
# -------------------------

OrderStatus = Literal["pending", "confirmed", "shipped", "delivered", "completed", "cancelled", "refunded"]


class Price(BaseModel):
    amount: float = Field(..., ge=0)
    currency: str = "USD"


class GearCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    price: Price


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None
    instructions: Optional[str] = None


class RentalPeriod(BaseModel):
    start_date: date
    end_date: date


class OrderItemCreate(BaseModel):
    gear_id: str
    quantity: int = Field(..., ge=1)
    rental_period: Optional[RentalPeriod] = None


class OrderCreate(BaseModel):
    items: List[OrderItemCreate] = Field(..., min_length=1)
    delivery_method: Literal["pickup", "delivery", "shipping"]
    payment_method: Literal["credit_card", "debit_card", "paypal", "stripe", "bank_transfer", "cash"]
    shipping_address: Optional[Address] = None
    pickup_address: Optional[Address] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    notes: Optional[str] = None


class OrderCancel(BaseModel):
    reason: Optional[str] = None


class RefundRequest(BaseModel):
    amount: Optional[float] = Field(None, gt=0)
    reason: Optional[str] = None

"""
Per-trip discussion threads.

A trip owns at most one discussion document (unique ``trip_id``) holding an
embedded, append-only ``messages`` array and an ``active_users`` map of
``user_id -> {last_seen, is_typing}``. Every write is a single atomic
update on that document; the trip's last-activity stamp and the Socket.IO
event follow the write and are not part of it.
"""

import logging
import uuid
from typing import List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import Settings
from database import get_documents, pagination, to_object_id, utcnow
from errors import AuthorizationFailure, NotFound, ValidationFailure
from policies import AccessPolicy
from realtime import RealtimeChannel, trip_room
from schemas import SystemEvent, SystemNotice

logger = logging.getLogger(__name__)

SEED_MESSAGE = "Discussion started for this trip!"
TRIP_CREATED_MESSAGE = "Trip discussion started! Welcome everyone to collaborate on this amazing journey."


def clean_content(content: Optional[str], max_length: int) -> str:
    text = (content or "").strip()
    if not text:
        raise ValidationFailure("Message content is required")
    if len(text) > max_length:
        raise ValidationFailure(f"Message cannot exceed {max_length} characters")
    return text


def build_message(author_id: str, content: str, message_type: str = "text", metadata: Optional[dict] = None) -> dict:
    return {
        "message_id": str(uuid.uuid4()),
        "author_id": author_id,
        "content": content,
        "message_type": message_type,
        "metadata": metadata,
        "timestamp": utcnow(),
        "is_edited": False,
        "edited_at": None,
    }


class DiscussionService:
    def __init__(self, db: Database, channel: RealtimeChannel, policy: AccessPolicy, settings: Settings):
        self.db = db
        self.channel = channel
        self.policy = policy
        self.settings = settings

    # -------------------------
    # Helpers
    # -------------------------

    def _load_trip(self, trip_id: str) -> dict:
        trip = self.db["trip"].find_one({"_id": to_object_id(trip_id, "Trip")})
        if not trip:
            raise NotFound("Trip not found")
        return trip

    def _require_access(self, trip: dict, user_id: str, message: str = "Access denied") -> None:
        if not self.policy.can_access_trip(trip, user_id):
            raise AuthorizationFailure(message)

    def _update_thread(self, trip_id: str, update: dict) -> None:
        now = utcnow()
        update.setdefault("$set", {})["updated_at"] = now
        update.setdefault("$setOnInsert", {})["created_at"] = now
        try:
            self.db["discussion"].update_one({"trip_id": trip_id}, update, upsert=True)
        except DuplicateKeyError:
            # a concurrent request created the thread first
            update.pop("$setOnInsert", None)
            self.db["discussion"].update_one({"trip_id": trip_id}, update)

    def _presence(self, user_id: str, is_typing: bool) -> dict:
        return {
            f"active_users.{user_id}.last_seen": utcnow(),
            f"active_users.{user_id}.is_typing": is_typing,
        }

    def _authors(self, author_ids: List[str]) -> dict:
        object_ids = []
        for author_id in set(author_ids):
            try:
                object_ids.append(to_object_id(author_id))
            except NotFound:
                continue
        users = get_documents(self.db, "user", {"_id": {"$in": object_ids}})
        return {str(u["_id"]): {"id": str(u["_id"]), "name": u.get("name"), "email": u.get("email")} for u in users}

    def _with_author(self, message: dict, authors: dict) -> dict:
        out = dict(message)
        out["author"] = authors.get(message["author_id"], {"id": message["author_id"], "name": None})
        return out

    # -------------------------
    # Public operations
    # -------------------------

    def get_discussion(self, trip_id: str, requester: dict, page: int = 1, limit: Optional[int] = None) -> dict:
        limit = limit or self.settings.discussion_page_size
        trip = self._load_trip(trip_id)
        self._require_access(trip, requester["id"], "Only trip organizer or participants can access discussions")

        now = utcnow()
        seed = build_message(requester["id"], SEED_MESSAGE, "system")
        try:
            discussion = self.db["discussion"].find_one_and_update(
                {"trip_id": trip_id},
                {"$setOnInsert": {"messages": [seed], "active_users": {}, "created_at": now, "updated_at": now}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            discussion = self.db["discussion"].find_one({"trip_id": trip_id})

        messages = sorted(discussion.get("messages", []), key=lambda m: m["timestamp"])
        skip = (page - 1) * limit
        page_messages = messages[skip:skip + limit]
        authors = self._authors([m["author_id"] for m in page_messages])

        discussion["messages"] = [self._with_author(m, authors) for m in page_messages]
        return {
            "discussion": discussion,
            "trip": {
                "id": str(trip["_id"]),
                "title": trip.get("title"),
                "collaborative_features": trip.get("collaborative_features"),
            },
            "pagination": pagination(page, limit, len(page_messages), len(messages)),
        }

    def send_message(self, trip_id: str, requester: dict, content: str, message_type: str = "text") -> dict:
        text = clean_content(content, self.settings.message_max_length)
        trip = self._load_trip(trip_id)
        if not trip.get("collaborative_features", {}).get("allow_discussions", True):
            raise AuthorizationFailure("Discussions are disabled for this trip")
        self._require_access(trip, requester["id"], "Only trip organizer or participants can send messages")

        message = build_message(requester["id"], text, message_type)
        self._update_thread(trip_id, {
            "$push": {"messages": message},
            "$set": self._presence(requester["id"], False),
        })
        self.db["trip"].update_one(
            {"_id": trip["_id"]},
            {"$set": {"collaborative_features.last_activity": message["timestamp"]}},
        )

        message = self._with_author(message, {requester["id"]: {
            "id": requester["id"], "name": requester.get("name"), "email": requester.get("email"),
        }})
        self.channel.publish("newMessage", {"trip_id": trip_id, "message": message}, room=trip_room(trip_id))
        logger.info(f"Discussion message {message['message_id']} posted to trip {trip_id}")
        return message

    def update_typing_status(self, trip_id: str, requester: dict, is_typing: bool) -> None:
        trip = self._load_trip(trip_id)
        self._require_access(trip, requester["id"])
        self._update_thread(trip_id, {"$set": self._presence(requester["id"], is_typing)})
        # receivers drop events carrying their own user id
        self.channel.publish(
            "typingStatus",
            {
                "trip_id": trip_id,
                "user": {"id": requester["id"], "name": requester.get("name")},
                "is_typing": is_typing,
            },
            room=trip_room(trip_id),
        )

    def mark_user_active(self, trip_id: str, requester: dict) -> None:
        trip = self._load_trip(trip_id)
        self._require_access(trip, requester["id"])
        self._update_thread(trip_id, {"$set": self._presence(requester["id"], False)})

    # -------------------------
    # Trip lifecycle entry points
    # -------------------------

    def start_discussion(self, trip_id: str, author_id: str) -> None:
        self.post_system_message(trip_id, author_id, TRIP_CREATED_MESSAGE, SystemNotice())

    def post_system_message(self, trip_id: str, author_id: str, content: str, event: SystemEvent) -> dict:
        metadata = event.model_dump(exclude={"message_type"}) or None
        message = build_message(author_id, content, event.message_type, metadata)
        self._update_thread(trip_id, {"$push": {"messages": message}})
        return message

    def delete_for_trip(self, trip_id: str) -> None:
        result = self.db["discussion"].delete_one({"trip_id": trip_id})
        if result.deleted_count:
            logger.info(f"Deleted discussion of trip {trip_id}")

"""
Direct and group chats, plus the trip Q&A mode.

Messages live in their own collection and point at their chat. A direct
chat is unique per unordered pair of users through the sparse unique
``pair_key`` index; losing the insert race simply returns the chat the
other request created.
"""

import logging
import uuid
from typing import List, Optional, Tuple

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import find_user
from config import Settings
from database import get_documents, pagination, to_object_id, utcnow
from discussions import clean_content
from errors import AuthorizationFailure, BusinessRuleViolation, NotFound, ValidationFailure
from policies import AccessPolicy
from realtime import RealtimeChannel, user_room

logger = logging.getLogger(__name__)


def pair_key(user_a: str, user_b: str) -> str:
    return ":".join(sorted([user_a, user_b]))


class ChatService:
    def __init__(self, db: Database, channel: RealtimeChannel, policy: AccessPolicy, settings: Settings):
        self.db = db
        self.channel = channel
        self.policy = policy
        self.settings = settings

    def _load_chat(self, chat_id: str) -> dict:
        chat = self.db["chat"].find_one({"_id": to_object_id(chat_id, "Chat")})
        if not chat:
            raise NotFound("Chat not found")
        return chat

    def _require_participant(self, chat: dict, user_id: str, message: str = "Access denied") -> None:
        if not self.policy.is_chat_participant(chat, user_id):
            raise AuthorizationFailure(message)

    def _load_message(self, message_id: str, label: str = "Message") -> dict:
        message = self.db["message"].find_one({"_id": to_object_id(message_id, label)})
        if not message:
            raise NotFound(f"{label} not found")
        return message

    def _people(self, user_ids: List[str]) -> dict:
        object_ids = []
        for user_id in set(user_ids):
            try:
                object_ids.append(to_object_id(user_id))
            except NotFound:
                continue
        users = get_documents(self.db, "user", {"_id": {"$in": object_ids}})
        return {str(u["_id"]): {"id": str(u["_id"]), "name": u.get("name"), "email": u.get("email")} for u in users}

    def _populate_chat(self, chat: dict) -> dict:
        people = self._people([p["user_id"] for p in chat.get("participants", [])])
        chat["participants"] = [
            {**p, "user": people.get(p["user_id"], {"id": p["user_id"], "name": None})}
            for p in chat.get("participants", [])
        ]
        return chat

    def _populate_messages(self, messages: List[dict]) -> List[dict]:
        people = self._people(
            [m["sender_id"] for m in messages] + [m["answered_by"] for m in messages if m.get("answered_by")]
        )
        for m in messages:
            m["sender"] = people.get(m["sender_id"], {"id": m["sender_id"], "name": None})
            if m.get("answered_by"):
                m["answerer"] = people.get(m["answered_by"], {"id": m["answered_by"], "name": None})
        return messages

    # -------------------------
    # Chats
    # -------------------------

    def create_direct_chat(self, requester: dict, participant_id: Optional[str]) -> Tuple[dict, bool]:
        """Return ``(chat, created)`` for the chat between requester and participant."""
        if not participant_id:
            raise ValidationFailure("Participant ID is required")
        if participant_id == requester["id"]:
            raise ValidationFailure("Cannot start a chat with yourself")
        if not find_user(self.db, participant_id):
            raise NotFound("User not found")

        key = pair_key(requester["id"], participant_id)
        existing = self.db["chat"].find_one({"pair_key": key})
        if existing:
            return self._populate_chat(existing), False

        now = utcnow()
        chat = {
            "chat_id": str(uuid.uuid4()),
            "chat_type": "direct",
            "pair_key": key,
            "participants": [
                {"user_id": requester["id"], "role": "member", "joined_at": now},
                {"user_id": participant_id, "role": "member", "joined_at": now},
            ],
            "last_message_id": None,
            "last_activity": now,
            "created_at": now,
            "updated_at": now,
        }
        try:
            self.db["chat"].insert_one(chat)
        except DuplicateKeyError:
            logger.info(f"Direct chat {key} created concurrently, returning existing")
            return self._populate_chat(self.db["chat"].find_one({"pair_key": key})), False
        logger.info(f"Created direct chat {chat['_id']}")
        return self._populate_chat(chat), True

    def create_group_chat(self, requester: dict, name: str, participant_ids: List[str], trip_id: Optional[str] = None) -> dict:
        name = (name or "").strip()
        if not name:
            raise ValidationFailure("Group name is required")
        member_ids = [pid for pid in dict.fromkeys(participant_ids) if pid != requester["id"]]
        if not member_ids:
            raise ValidationFailure("A group chat needs at least one other participant")
        for member_id in member_ids:
            if not find_user(self.db, member_id):
                raise NotFound(f"User {member_id} not found")
        if trip_id:
            trip = self.db["trip"].find_one({"_id": to_object_id(trip_id, "Trip")})
            if not trip:
                raise NotFound("Trip not found")
            if not self.policy.can_access_trip(trip, requester["id"]):
                raise AuthorizationFailure("Only trip organizer or participants can open a trip chat")

        now = utcnow()
        chat = {
            "chat_id": str(uuid.uuid4()),
            "chat_type": "group",
            "name": name,
            "trip_id": trip_id,
            "participants": [{"user_id": requester["id"], "role": "admin", "joined_at": now}]
            + [{"user_id": member_id, "role": "member", "joined_at": now} for member_id in member_ids],
            "last_message_id": None,
            "last_activity": now,
            "created_at": now,
            "updated_at": now,
        }
        self.db["chat"].insert_one(chat)
        logger.info(f"Created group chat {chat['_id']} with {len(chat['participants'])} participants")
        return self._populate_chat(chat)

    def get_user_chats(self, requester: dict, page: int = 1, limit: Optional[int] = None) -> dict:
        limit = limit or self.settings.chat_page_size
        query = {"participants.user_id": requester["id"]}
        chats = list(
            self.db["chat"].find(query)
            .sort("last_activity", DESCENDING)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        total = self.db["chat"].count_documents(query)

        last_ids = [c["last_message_id"] for c in chats if c.get("last_message_id")]
        last_messages = {
            m["_id"]: m for m in self.db["message"].find({"_id": {"$in": last_ids}})
        }
        for chat in chats:
            self._populate_chat(chat)
            last = last_messages.get(chat.get("last_message_id"))
            chat["last_message"] = self._populate_messages([last])[0] if last else None
        return {"chats": chats, "pagination": pagination(page, limit, len(chats), total)}

    def get_chat_details(self, chat_id: str, requester: dict) -> dict:
        chat = self._load_chat(chat_id)
        self._require_participant(chat, requester["id"], "Access denied to this chat")
        return self._populate_chat(chat)

    # -------------------------
    # Messages
    # -------------------------

    def get_chat_messages(self, chat_id: str, requester: dict, page: int = 1, limit: Optional[int] = None) -> dict:
        limit = limit or self.settings.discussion_page_size
        chat = self._load_chat(chat_id)
        self._require_participant(chat, requester["id"])

        query = {"chat_id": str(chat["_id"]), "is_deleted": {"$ne": True}}
        newest_first = list(
            self.db["message"].find(query)
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        total = self.db["message"].count_documents(query)
        messages = self._populate_messages(list(reversed(newest_first)))
        return {"messages": messages, "pagination": pagination(page, limit, len(messages), total)}

    def send_message(self, chat_id: str, requester: dict, content: str, message_type: str = "text") -> dict:
        text = clean_content(content, self.settings.message_max_length)
        chat = self._load_chat(chat_id)
        self._require_participant(chat, requester["id"])

        now = utcnow()
        message = {
            "message_id": str(uuid.uuid4()),
            "chat_id": str(chat["_id"]),
            "trip_id": chat.get("trip_id"),
            "sender_id": requester["id"],
            "content": text,
            "message_type": message_type,
            "read_by": [],
            "is_deleted": False,
            "deleted_at": None,
            "created_at": now,
            "updated_at": now,
        }
        if message_type == "question":
            message.update({"is_answered": False, "answer": None, "answered_by": None, "answered_at": None})
        self.db["message"].insert_one(message)
        self.db["chat"].update_one(
            {"_id": chat["_id"]},
            {"$set": {"last_message_id": message["_id"], "last_activity": now, "updated_at": now}},
        )

        message["sender"] = {"id": requester["id"], "name": requester.get("name"), "email": requester.get("email")}
        # one copy per participant room, so users get it outside the chat view too
        for participant in chat.get("participants", []):
            self.channel.publish(
                "newMessage",
                {"chat_id": str(chat["_id"]), "message": message},
                room=user_room(participant["user_id"]),
            )
        return message

    def mark_as_read(self, chat_id: str, requester: dict) -> int:
        chat = self._load_chat(chat_id)
        self._require_participant(chat, requester["id"])
        result = self.db["message"].update_many(
            {
                "chat_id": str(chat["_id"]),
                "sender_id": {"$ne": requester["id"]},
                "read_by": {"$ne": requester["id"]},
            },
            {"$addToSet": {"read_by": requester["id"]}},
        )
        return result.modified_count

    def delete_message(self, message_id: str, requester: dict) -> None:
        message = self._load_message(message_id)
        if message["sender_id"] != requester["id"]:
            raise AuthorizationFailure("Only the sender can delete this message")
        now = utcnow()
        self.db["message"].update_one(
            {"_id": message["_id"]},
            {"$set": {"is_deleted": True, "deleted_at": now, "updated_at": now}},
        )
        logger.info(f"Message {message['_id']} tombstoned by {requester['id']}")

    # -------------------------
    # Q&A
    # -------------------------

    def get_qa_messages(self, trip_id: str, answered: str = "all", page: int = 1, limit: Optional[int] = None) -> dict:
        limit = limit or self.settings.chat_page_size
        query = {"trip_id": trip_id, "message_type": "question", "is_deleted": {"$ne": True}}
        if answered != "all":
            query["is_answered"] = answered == "true"
        messages = list(
            self.db["message"].find(query)
            .sort("created_at", DESCENDING)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        total = self.db["message"].count_documents(query)
        return {
            "messages": self._populate_messages(messages),
            "pagination": pagination(page, limit, len(messages), total),
        }

    def answer_question(self, message_id: str, requester: dict, answer: str) -> dict:
        text = (answer or "").strip()
        if not text:
            raise ValidationFailure("Answer is required")
        object_id = to_object_id(message_id, "Question")
        now = utcnow()
        updated = self.db["message"].find_one_and_update(
            {"_id": object_id, "message_type": "question", "is_answered": {"$ne": True}},
            {"$set": {
                "answer": text,
                "answered_by": requester["id"],
                "answered_at": now,
                "is_answered": True,
                "updated_at": now,
            }},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            question = self._load_message(message_id, "Question")
            if question.get("message_type") != "question":
                raise ValidationFailure("This message is not a question")
            raise BusinessRuleViolation("This question has already been answered")
        return self._populate_messages([updated])[0]

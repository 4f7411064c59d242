"""
Trip lifecycle: creation, admin approval, membership and itinerary edits.

Membership changes are conditional single-document updates on the trip,
so two concurrent joins can never push the same user twice or overshoot
``max_participants``. After the write, the discussion gets a system
message (when discussions are enabled) and the event goes out on the trip
room; join/leave additionally broadcast ``tripUpdated`` to every client so
trip lists elsewhere refresh.
"""

import logging
import re
import uuid
from datetime import date, datetime, time, timezone
from typing import List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from config import Settings
from database import pagination, to_object_id, utcnow
from discussions import DiscussionService
from errors import AuthorizationFailure, BusinessRuleViolation, NotFound
from policies import AccessPolicy
from realtime import RealtimeChannel, trip_room
from schemas import (
    ItineraryChange,
    ItineraryDay,
    ItineraryUpdateNotice,
    TripCreate,
    TripUpdate,
    UserAction,
    UserJoinedNotice,
    UserLeftNotice,
)

logger = logging.getLogger(__name__)

CLOSED_STATUSES = ("completed", "cancelled")


def _to_datetime(value):
    # BSON stores datetimes, not dates
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    return value


class TripService:
    def __init__(
        self,
        db: Database,
        discussions: DiscussionService,
        channel: RealtimeChannel,
        policy: AccessPolicy,
        settings: Settings,
    ):
        self.db = db
        self.discussions = discussions
        self.channel = channel
        self.policy = policy
        self.settings = settings

    def _load_trip(self, trip_id: str) -> dict:
        trip = self.db["trip"].find_one({"_id": to_object_id(trip_id, "Trip")})
        if not trip:
            raise NotFound("Trip not found")
        return trip

    def _require_admin(self, user: dict) -> None:
        if not self.policy.is_admin(user):
            raise AuthorizationFailure("Admin access required")

    @staticmethod
    def _discussions_enabled(trip: dict) -> bool:
        return trip.get("collaborative_features", {}).get("allow_discussions", True)

    @staticmethod
    def _public_user(user: dict) -> dict:
        return {"id": str(user["_id"]), "name": user.get("name"), "email": user.get("email")}

    # -------------------------
    # Create / read
    # -------------------------

    def create_trip(self, requester: dict, payload: TripCreate) -> dict:
        if payload.end_date < payload.start_date:
            raise BusinessRuleViolation("End date must be on or after start date")
        now = utcnow()
        data = payload.model_dump()
        data["start_date"] = _to_datetime(payload.start_date)
        data["end_date"] = _to_datetime(payload.end_date)
        data.update({
            "trip_id": str(uuid.uuid4()),
            "organizer_id": requester["id"],
            "participants": [],
            "current_participants": 0,
            "status": "planning",
            "is_approved": False,
            "approved_at": None,
            "approved_by": None,
            "itinerary": [],
            "created_at": now,
            "updated_at": now,
        })
        data["collaborative_features"]["last_activity"] = now
        self.db["trip"].insert_one(data)
        trip_id = str(data["_id"])

        if self._discussions_enabled(data):
            self.discussions.start_discussion(trip_id, requester["id"])

        # not broadcast until an admin approves it
        logger.info(f"Trip {trip_id} created by {requester['id']}, awaiting approval")
        return data

    def get_pending_trips(self, requester: dict) -> List[dict]:
        self._require_admin(requester)
        return list(
            self.db["trip"].find({"is_public": True, "is_approved": False})
            .sort("created_at", DESCENDING)
            .limit(100)
        )

    def approve_trip(self, trip_id: str, requester: dict) -> dict:
        self._require_admin(requester)
        trip = self.db["trip"].find_one_and_update(
            {"_id": to_object_id(trip_id, "Trip")},
            {"$set": {"is_approved": True, "approved_at": utcnow(), "approved_by": requester["id"]}},
            return_document=ReturnDocument.AFTER,
        )
        if not trip:
            raise NotFound("Trip not found")
        self.channel.publish("tripCreated", {"trip": trip, "organizer": {"id": trip["organizer_id"]}})
        logger.info(f"Trip {trip_id} approved by {requester['id']}")
        return trip

    def list_trips(
        self,
        search: Optional[str] = None,
        destination: Optional[str] = None,
        tag: Optional[str] = None,
        trip_type: Optional[str] = None,
        difficulty: Optional[str] = None,
        start_date=None,
        end_date=None,
        page: int = 1,
        limit: int = 10,
    ) -> dict:
        query: dict = {"is_public": True, "is_approved": True}
        if search:
            # user text is matched literally, never as a pattern
            search = re.escape(search)
            query["$or"] = [
                {"title": {"$regex": search, "$options": "i"}},
                {"description": {"$regex": search, "$options": "i"}},
                {"destination": {"$regex": search, "$options": "i"}},
            ]
        if destination:
            query["destination"] = {"$regex": re.escape(destination), "$options": "i"}
        if tag:
            query["tags"] = {"$in": [tag]}
        if trip_type:
            query["trip_type"] = trip_type
        if difficulty:
            query["difficulty"] = difficulty
        if start_date:
            query["start_date"] = {"$gte": _to_datetime(start_date)}
        if end_date:
            query["end_date"] = {"$lte": _to_datetime(end_date)}

        trips = list(
            self.db["trip"].find(query)
            .sort([("collaborative_features.last_activity", DESCENDING), ("created_at", DESCENDING)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        total = self.db["trip"].count_documents(query)
        return {"trips": trips, "pagination": pagination(page, limit, len(trips), total)}

    def get_trip(self, trip_id: str) -> dict:
        return self._load_trip(trip_id)

    def get_user_trips(self, requester: dict, kind: str = "all") -> List[dict]:
        if kind == "organized":
            query = {"organizer_id": requester["id"]}
        elif kind == "joined":
            query = {"participants.user_id": requester["id"]}
        else:
            query = {"$or": [{"organizer_id": requester["id"]}, {"participants.user_id": requester["id"]}]}
        return list(
            self.db["trip"].find(query)
            .sort([("collaborative_features.last_activity", DESCENDING), ("created_at", DESCENDING)])
        )

    # -------------------------
    # Update / delete
    # -------------------------

    def update_trip(self, trip_id: str, requester: dict, payload: TripUpdate) -> dict:
        trip = self._load_trip(trip_id)
        if not self.policy.is_organizer(trip, requester["id"]):
            raise AuthorizationFailure("Only trip organizer can update this trip")

        changes = payload.model_dump(exclude_unset=True)
        features = changes.pop("collaborative_features", None)
        for field in ("start_date", "end_date"):
            if field in changes:
                changes[field] = _to_datetime(changes[field])
        start = changes.get("start_date", trip.get("start_date"))
        end = changes.get("end_date", trip.get("end_date"))
        if start and end and _naive(end) < _naive(start):
            raise BusinessRuleViolation("End date must be on or after start date")
        if changes.get("max_participants") is not None and changes["max_participants"] < trip.get("current_participants", 0):
            raise BusinessRuleViolation("Capacity cannot be lower than the current number of participants")

        now = utcnow()
        update = dict(changes)
        if features:
            for k, v in features.items():
                update[f"collaborative_features.{k}"] = v
        update["collaborative_features.last_activity"] = now
        update["updated_at"] = now
        trip = self.db["trip"].find_one_and_update(
            {"_id": trip["_id"]}, {"$set": update}, return_document=ReturnDocument.AFTER
        )

        self.channel.publish("tripUpdated", {"trip": trip, "updated_by": requester["id"]}, room=trip_room(trip_id))
        return trip

    def delete_trip(self, trip_id: str, requester: dict) -> None:
        trip = self._load_trip(trip_id)
        if not self.policy.can_manage_trip(trip, requester):
            raise AuthorizationFailure("Only organizer or admin can delete this trip")

        self.discussions.delete_for_trip(trip_id)
        self.db["trip"].delete_one({"_id": trip["_id"]})
        self.channel.publish("tripDeleted", {"trip_id": trip_id, "deleted_by": requester["id"]}, room=trip_room(trip_id))
        logger.info(f"Trip {trip_id} deleted by {requester['id']}")

    # -------------------------
    # Membership
    # -------------------------

    def join_trip(self, trip_id: str, requester: dict) -> dict:
        trip = self._load_trip(trip_id)
        user_id = requester["id"]
        if self.policy.is_organizer(trip, user_id):
            raise BusinessRuleViolation("You are the organizer of this trip")
        if trip.get("status") in CLOSED_STATUSES:
            raise BusinessRuleViolation("This trip is not accepting participants")

        now = utcnow()
        updated = self.db["trip"].find_one_and_update(
            {
                "_id": trip["_id"],
                "participants.user_id": {"$ne": user_id},
                "current_participants": {"$lt": trip.get("max_participants", 0)},
                "status": {"$nin": list(CLOSED_STATUSES)},
            },
            {
                "$push": {"participants": {"user_id": user_id, "status": "confirmed", "joined_at": now}},
                "$inc": {"current_participants": 1},
                "$set": {"collaborative_features.last_activity": now, "updated_at": now},
            },
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            current = self._load_trip(trip_id)
            if any(p.get("user_id") == user_id for p in current.get("participants", [])):
                raise BusinessRuleViolation("You have already joined this trip")
            if current.get("status") in CLOSED_STATUSES:
                raise BusinessRuleViolation("This trip is not accepting participants")
            raise BusinessRuleViolation("Trip is full")

        user = self._public_user(requester)
        if self._discussions_enabled(updated):
            self.discussions.post_system_message(
                trip_id,
                user_id,
                f"{user['name']} has joined the trip!",
                UserJoinedNotice(user_action=UserAction(action="joined", user_name=user["name"])),
            )

        self.channel.publish("userJoined", {"trip": updated, "user": user}, room=trip_room(trip_id))
        self.channel.publish("tripUpdated", {"trip": updated})
        logger.info(f"User {user_id} joined trip {trip_id}")
        return updated

    def leave_trip(self, trip_id: str, requester: dict) -> dict:
        trip = self._load_trip(trip_id)
        user_id = requester["id"]
        if self.policy.is_organizer(trip, user_id):
            raise BusinessRuleViolation("Trip organizer cannot leave the trip. Delete the trip instead.")

        now = utcnow()
        updated = self.db["trip"].find_one_and_update(
            {"_id": trip["_id"], "participants.user_id": user_id},
            {
                "$pull": {"participants": {"user_id": user_id}},
                "$inc": {"current_participants": -1},
                "$set": {"collaborative_features.last_activity": now, "updated_at": now},
            },
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise BusinessRuleViolation("You are not a participant of this trip")

        user = self._public_user(requester)
        if self._discussions_enabled(updated):
            self.discussions.post_system_message(
                trip_id,
                user_id,
                f"{user['name']} has left the trip.",
                UserLeftNotice(user_action=UserAction(action="left", user_name=user["name"])),
            )

        self.channel.publish("userLeft", {"trip": updated, "user": user}, room=trip_room(trip_id))
        self.channel.publish("tripUpdated", {"trip": updated})
        logger.info(f"User {user_id} left trip {trip_id}")
        return updated

    # -------------------------
    # Itinerary
    # -------------------------

    def update_itinerary(self, trip_id: str, requester: dict, itinerary: List[ItineraryDay]) -> dict:
        trip = self._load_trip(trip_id)
        if not trip.get("collaborative_features", {}).get("allow_itinerary_editing", True):
            raise AuthorizationFailure("Collaborative itinerary editing is disabled for this trip")
        if not self.policy.can_access_trip(trip, requester["id"]):
            raise AuthorizationFailure("Only trip organizer or participants can update itinerary")

        now = utcnow()
        days = []
        for day in itinerary:
            day_doc = day.model_dump()
            for activity in day_doc["activities"]:
                activity["added_by"] = activity.get("added_by") or requester["id"]
                activity["added_at"] = activity.get("added_at") or now
            days.append(day_doc)

        updated = self.db["trip"].find_one_and_update(
            {"_id": trip["_id"]},
            {"$set": {"itinerary": days, "collaborative_features.last_activity": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )

        user = self._public_user(requester)
        if self._discussions_enabled(updated):
            self.discussions.post_system_message(
                trip_id,
                requester["id"],
                f"{user['name']} updated the trip itinerary.",
                ItineraryUpdateNotice(
                    itinerary_change=ItineraryChange(action="updated", day=None, activity="Full itinerary updated")
                ),
            )

        self.channel.publish(
            "itineraryUpdated",
            {"trip": updated, "updated_by": {"id": user["id"], "name": user["name"]}, "itinerary": days},
            room=trip_room(trip_id),
        )
        return updated


def _naive(value):
    return value.replace(tzinfo=None) if getattr(value, "tzinfo", None) else value

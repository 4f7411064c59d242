from typing import Optional

from config import Settings


class AccessPolicy:
    """Role and membership checks, evaluated per call against the given documents."""

    def __init__(self, super_admin_email: Optional[str] = None, super_admin_id: Optional[str] = None):
        self.super_admin_email = super_admin_email
        self.super_admin_id = super_admin_id

    @classmethod
    def from_settings(cls, settings: Settings) -> "AccessPolicy":
        return cls(settings.super_admin_email, settings.super_admin_id)

    def is_super_admin(self, user: Optional[dict]) -> bool:
        if not user:
            return False
        if self.super_admin_email and user.get("email") == self.super_admin_email:
            return True
        return bool(self.super_admin_id) and str(user.get("_id")) == str(self.super_admin_id)

    def is_admin(self, user: Optional[dict]) -> bool:
        return bool(user) and (user.get("role") == "admin" or self.is_super_admin(user))

    @staticmethod
    def is_organizer(trip: dict, user_id: str) -> bool:
        return trip.get("organizer_id") == user_id

    @staticmethod
    def is_confirmed_participant(trip: dict, user_id: str) -> bool:
        return any(
            p.get("user_id") == user_id and p.get("status") == "confirmed"
            for p in trip.get("participants", [])
        )

    def can_access_trip(self, trip: dict, user_id: str) -> bool:
        return self.is_organizer(trip, user_id) or self.is_confirmed_participant(trip, user_id)

    def can_manage_trip(self, trip: dict, user: dict) -> bool:
        return self.is_organizer(trip, str(user["_id"])) or self.is_admin(user)

    @staticmethod
    def is_chat_participant(chat: dict, user_id: str) -> bool:
        return any(p.get("user_id") == user_id for p in chat.get("participants", []))

import logging
import uuid
from typing import Optional, Tuple

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import find_user
from config import Settings
from database import pagination, to_object_id, utcnow
from errors import NotFound, ValidationFailure
from schemas import RatingCreate

logger = logging.getLogger(__name__)

SORTS = {
    "newest": [("created_at", DESCENDING)],
    "helpful": [("helpful_votes", DESCENDING), ("created_at", DESCENDING)],
    "rating-high": [("rating", DESCENDING), ("created_at", DESCENDING)],
    "rating-low": [("rating", ASCENDING), ("created_at", DESCENDING)],
}


class RatingService:
    def __init__(self, db: Database, settings: Settings):
        self.db = db
        self.settings = settings

    def _check_target(self, target_type: str, target_id: str) -> None:
        if target_type == "guide":
            guide = find_user(self.db, target_id)
            if not guide or guide.get("role") != "guide":
                raise NotFound("Guide not found")
        elif target_type == "trip":
            if not self.db["trip"].find_one({"_id": to_object_id(target_id, "Trip")}):
                raise NotFound("Trip not found")
        else:
            raise ValidationFailure("Invalid target type")

    def refresh_guide_rating(self, guide_id: str) -> None:
        """Recompute the guide's average and count over visible ratings."""
        stats = list(self.db["rating"].aggregate([
            {"$match": {"target_type": "guide", "target_id": guide_id, "is_hidden": False}},
            {"$group": {"_id": None, "average": {"$avg": "$rating"}, "count": {"$sum": 1}}},
        ]))
        average, count = (stats[0]["average"], stats[0]["count"]) if stats else (0, 0)
        self.db["user"].update_one(
            {"_id": to_object_id(guide_id, "Guide")},
            {"$set": {
                "guide_info.rating.average": round(average or 0, self.settings.rating_average_decimals),
                "guide_info.rating.count": count,
            }},
        )

    def create_rating(self, requester: dict, payload: RatingCreate) -> Tuple[dict, bool]:
        """Create the reviewer's rating of a target, or update it; returns ``(rating, created)``."""
        self._check_target(payload.target_type, payload.target_id)
        now = utcnow()
        key = {
            "reviewer_id": requester["id"],
            "target_type": payload.target_type,
            "target_id": payload.target_id,
        }
        update = {
            "$set": {"rating": payload.rating, "review": payload.review, "updated_at": now},
            "$setOnInsert": {
                "rating_id": str(uuid.uuid4()),
                "is_verified": False,
                "helpful_votes": 0,
                "report_count": 0,
                "is_hidden": False,
                "created_at": now,
            },
        }
        try:
            created = self.db["rating"].update_one(key, update, upsert=True).upserted_id is not None
        except DuplicateKeyError:
            # concurrent first rating by the same reviewer; apply ours as an update
            update.pop("$setOnInsert")
            self.db["rating"].update_one(key, update)
            created = False
        rating = self.db["rating"].find_one(key)

        if payload.target_type == "guide":
            self.refresh_guide_rating(payload.target_id)
        logger.info(f"Rating {rating['_id']} {'created' if created else 'updated'} by {requester['id']}")
        return rating, created

    def get_ratings(self, target_type: str, target_id: str, page: int = 1, limit: int = 10, sort: str = "newest") -> dict:
        query = {"target_type": target_type, "target_id": target_id, "is_hidden": False}
        ratings = list(
            self.db["rating"].find(query)
            .sort(SORTS.get(sort, SORTS["newest"]))
            .skip((page - 1) * limit)
            .limit(limit)
        )
        total = self.db["rating"].count_documents(query)

        stats = list(self.db["rating"].aggregate([
            {"$match": query},
            {"$group": {
                "_id": None,
                "average": {"$avg": "$rating"},
                "total": {"$sum": 1},
                "scores": {"$push": "$rating"},
            }},
        ]))
        distribution = {str(score): 0 for score in range(1, 6)}
        average, count = 0, 0
        if stats:
            average, count = stats[0]["average"], stats[0]["total"]
            for score in stats[0]["scores"]:
                distribution[str(score)] += 1

        reviewers = {}
        for reviewer_id in {r["reviewer_id"] for r in ratings}:
            user = find_user(self.db, reviewer_id)
            if user:
                reviewers[reviewer_id] = {"id": reviewer_id, "name": user.get("name")}
        for r in ratings:
            r["reviewer"] = reviewers.get(r["reviewer_id"], {"id": r["reviewer_id"], "name": None})

        return {
            "ratings": ratings,
            "stats": {
                "average": round(average or 0, self.settings.rating_average_decimals),
                "total": count,
                "distribution": distribution,
            },
            "pagination": pagination(page, limit, len(ratings), total),
        }

    def vote_helpful(self, rating_id: str, is_helpful: bool) -> int:
        object_id = to_object_id(rating_id, "Rating")
        if is_helpful:
            rating = self.db["rating"].find_one_and_update(
                {"_id": object_id}, {"$inc": {"helpful_votes": 1}}, return_document=ReturnDocument.AFTER
            )
        else:
            rating = self.db["rating"].find_one_and_update(
                {"_id": object_id, "helpful_votes": {"$gt": 0}},
                {"$inc": {"helpful_votes": -1}},
                return_document=ReturnDocument.AFTER,
            ) or self.db["rating"].find_one({"_id": object_id})
        if not rating:
            raise NotFound("Rating not found")
        return rating["helpful_votes"]

    def report_rating(self, rating_id: str, reason: Optional[str] = None) -> dict:
        rating = self.db["rating"].find_one_and_update(
            {"_id": to_object_id(rating_id, "Rating")},
            {"$inc": {"report_count": 1}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if not rating:
            raise NotFound("Rating not found")
        logger.info(f"Rating {rating_id} reported ({rating['report_count']}): {reason or 'no reason given'}")

        if rating["report_count"] >= self.settings.report_hide_threshold and not rating.get("is_hidden"):
            self.db["rating"].update_one({"_id": rating["_id"]}, {"$set": {"is_hidden": True}})
            rating["is_hidden"] = True
            logger.warning(f"Rating {rating_id} hidden after {rating['report_count']} reports")
            if rating["target_type"] == "guide":
                self.refresh_guide_rating(rating["target_id"])
        return rating

    def get_user_ratings(self, requester: dict, page: int = 1, limit: int = 10) -> dict:
        query = {"reviewer_id": requester["id"]}
        ratings = list(
            self.db["rating"].find(query)
            .sort("created_at", DESCENDING)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        total = self.db["rating"].count_documents(query)
        return {"ratings": ratings, "pagination": pagination(page, limit, len(ratings), total)}

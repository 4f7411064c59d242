import logging
import uuid
from datetime import datetime, time, timezone
from typing import List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from database import create_document, pagination, to_object_id, utcnow
from errors import AuthorizationFailure, BusinessRuleViolation, NotFound
from policies import AccessPolicy
from schemas import GearCreate, OrderCreate, OrderStatusUpdate

logger = logging.getLogger(__name__)

# status -> statuses a seller or admin may move it to
TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"shipped", "delivered", "cancelled"},
    "shipped": {"delivered"},
    "delivered": {"completed"},
    "completed": set(),
    "cancelled": set(),
    "refunded": set(),
}
CANCELLABLE = ("pending", "confirmed")


def _at_midnight(value):
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


class OrderService:
    def __init__(self, db: Database, policy: AccessPolicy):
        self.db = db
        self.policy = policy

    def _load_order(self, order_id: str) -> dict:
        order = self.db["order"].find_one({"_id": to_object_id(order_id, "Order")})
        if not order:
            raise NotFound("Order not found")
        return order

    def _require_seller_or_admin(self, order: dict, requester: dict, message: str) -> None:
        if order["seller_id"] != requester["id"] and not self.policy.is_admin(requester):
            raise AuthorizationFailure(message)

    # -------------------------
    # Gear
    # -------------------------

    def create_gear(self, requester: dict, payload: GearCreate) -> dict:
        gear_id = create_document(self.db, "gear", {
            **payload.model_dump(),
            "owner_id": requester["id"],
            "is_active": True,
            "availability": {"is_available": True},
        })
        return self.db["gear"].find_one({"_id": to_object_id(gear_id, "Gear")})

    def list_gear(self, owner_id: Optional[str] = None, limit: int = 100) -> List[dict]:
        query = {"is_active": True, "availability.is_available": True}
        if owner_id:
            query["owner_id"] = owner_id
        return list(self.db["gear"].find(query).sort("created_at", DESCENDING).limit(limit))

    # -------------------------
    # Orders
    # -------------------------

    def create_order(self, requester: dict, payload: OrderCreate) -> dict:
        items = []
        total = 0.0
        sellers = set()
        currencies = set()
        for item in payload.items:
            gear = self.db["gear"].find_one({"_id": to_object_id(item.gear_id, "Gear")})
            if not gear:
                raise NotFound(f"Gear item {item.gear_id} not found")
            if not gear.get("is_active") or not gear.get("availability", {}).get("is_available"):
                raise BusinessRuleViolation(f"Gear item {gear['name']} is not available")
            if gear["owner_id"] == requester["id"]:
                raise BusinessRuleViolation("You cannot order your own gear")

            price = gear["price"]
            rental = None
            days = 1
            if item.rental_period:
                days = (item.rental_period.end_date - item.rental_period.start_date).days
                if days < 1:
                    raise BusinessRuleViolation("Rental period must be at least one day")
                rental = {
                    "start_date": _at_midnight(item.rental_period.start_date),
                    "end_date": _at_midnight(item.rental_period.end_date),
                    "days": days,
                }
            total += price["amount"] * item.quantity * days
            sellers.add(gear["owner_id"])
            currencies.add(price.get("currency", "USD"))
            items.append({
                "gear_id": str(gear["_id"]),
                "name": gear["name"],
                "quantity": item.quantity,
                "price": {"amount": price["amount"], "currency": price.get("currency", "USD")},
                "rental_period": rental,
            })

        if len(sellers) > 1:
            raise BusinessRuleViolation("All items in an order must come from the same seller")
        if len(currencies) > 1:
            raise BusinessRuleViolation("All items in an order must share one currency")

        now = utcnow()
        order = {
            "order_id": str(uuid.uuid4()),
            "buyer_id": requester["id"],
            "seller_id": sellers.pop(),
            "items": items,
            "total_amount": {"amount": round(total, 2), "currency": currencies.pop()},
            "status": "pending",
            "payment_status": "pending",
            "payment_method": payload.payment_method,
            "delivery_method": payload.delivery_method,
            "shipping_address": payload.shipping_address.model_dump() if payload.shipping_address else None,
            "pickup_address": payload.pickup_address.model_dump() if payload.pickup_address else None,
            "notes": None,
            "cancellation_reason": None,
            "refund": None,
            "delivery_date": None,
            "created_at": now,
            "updated_at": now,
        }
        self.db["order"].insert_one(order)
        logger.info(f"Order {order['_id']} placed by {requester['id']} for {order['total_amount']}")
        return order

    def get_user_orders(self, requester: dict, status: Optional[str] = None, page: int = 1, limit: int = 10) -> dict:
        query: dict = {"$or": [{"buyer_id": requester["id"]}, {"seller_id": requester["id"]}]}
        if status:
            query["status"] = status
        orders = list(
            self.db["order"].find(query)
            .sort("created_at", DESCENDING)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        total = self.db["order"].count_documents(query)
        return {"orders": orders, "pagination": pagination(page, limit, len(orders), total)}

    def get_order(self, order_id: str, requester: dict) -> dict:
        order = self._load_order(order_id)
        if requester["id"] not in (order["buyer_id"], order["seller_id"]):
            raise AuthorizationFailure("Access denied")
        return order

    def update_order_status(self, order_id: str, requester: dict, payload: OrderStatusUpdate) -> dict:
        order = self._load_order(order_id)
        self._require_seller_or_admin(order, requester, "Only seller or admin can update order status")
        if payload.status not in TRANSITIONS[order["status"]]:
            raise BusinessRuleViolation(f"Cannot move order from {order['status']} to {payload.status}")

        now = utcnow()
        changes = {"status": payload.status, "updated_at": now}
        if payload.notes:
            changes["notes"] = payload.notes
        if payload.status == "delivered":
            changes["delivery_date"] = now
        # conditional on the status we validated against
        updated = self.db["order"].find_one_and_update(
            {"_id": order["_id"], "status": order["status"]},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise BusinessRuleViolation("Order status changed, reload and try again")
        logger.info(f"Order {order_id}: {order['status']} -> {payload.status}")
        return updated

    def cancel_order(self, order_id: str, requester: dict, reason: Optional[str] = None) -> dict:
        order = self._load_order(order_id)
        if requester["id"] not in (order["buyer_id"], order["seller_id"]):
            raise AuthorizationFailure("Access denied")
        updated = self.db["order"].find_one_and_update(
            {"_id": order["_id"], "status": {"$in": list(CANCELLABLE)}},
            {"$set": {"status": "cancelled", "cancellation_reason": reason, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise BusinessRuleViolation("Order cannot be cancelled at this stage")
        return updated

    def process_refund(self, order_id: str, requester: dict, amount: Optional[float] = None, reason: Optional[str] = None) -> dict:
        order = self._load_order(order_id)
        self._require_seller_or_admin(order, requester, "Only seller or admin can process refunds")
        if order["status"] == "refunded":
            raise BusinessRuleViolation("Order has already been refunded")
        total = order["total_amount"]
        if amount is not None and amount > total["amount"]:
            raise BusinessRuleViolation("Refund cannot exceed the order total")

        now = utcnow()
        refund = {
            "amount": amount if amount is not None else total["amount"],
            "currency": total["currency"],
            "reason": reason,
            "processed_at": now,
        }
        updated = self.db["order"].find_one_and_update(
            {"_id": order["_id"], "status": {"$ne": "refunded"}},
            {"$set": {"refund": refund, "status": "refunded", "payment_status": "refunded", "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise BusinessRuleViolation("Order has already been refunded")
        logger.info(f"Order {order_id} refunded {refund['amount']} {refund['currency']}")
        return updated

# marketplace/repositories/payments.py
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from ..utils import to_object_id, utcnow


class PaymentRepository:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db.payments
        self.events = db.webhook_events

    async def insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        res = await self.collection.insert_one(doc)
        return await self.collection.find_one({"_id": res.inserted_id})

    async def get(self, payment_id: Any) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one({"_id": to_object_id(payment_id, "payment_id")})

    async def find_by_order(self, gateway: str, order_id: str) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one({"gateway": gateway, "order_id": order_id})

    async def find_by_authorization(self, authorization_id: str) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one({"gateway": "PAYPAL", "authorization_id": authorization_id})

    async def list_for_booking(self, booking_id: Any) -> List[Dict[str, Any]]:
        return await self.collection.find(
            {"booking_id": to_object_id(booking_id, "booking_id")}
        ).sort("created_at", 1).to_list(100)

    async def find_captured(self, booking_id: Any, exclude_id: Any = None) -> Optional[Dict[str, Any]]:
        query: Dict[str, Any] = {
            "booking_id": to_object_id(booking_id, "booking_id"),
            "status": "CAPTURED",
        }
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        return await self.collection.find_one(query)

    async def find_latest_settled(self, booking_id: Any) -> Optional[Dict[str, Any]]:
        docs = await self.collection.find({
            "booking_id": to_object_id(booking_id, "booking_id"),
            "status": {"$in": ["CAPTURED", "REFUNDED"]},
        }).sort("created_at", -1).to_list(1)
        return docs[0] if docs else None

    async def update_status(
        self,
        payment_id: Any,
        expected_status: str,
        fields: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one_and_update(
            {"_id": payment_id, "status": expected_status},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )

    async def set_fields(self, payment_id: Any, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one_and_update(
            {"_id": payment_id},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )

    async def claim_event(self, event_key: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """Registra un evento de webhook; False si ya se había procesado."""
        if await self.events.find_one({"_id": event_key}, {"_id": 1}):
            return False
        try:
            await self.events.insert_one({"_id": event_key, "payload": payload or {}, "received_at": utcnow()})
        except DuplicateKeyError:
            return False
        return True

    async def release_event(self, event_key: str) -> None:
        await self.events.delete_one({"_id": event_key})

# marketplace/repositories/bookings.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from ..utils import to_object_id


class BookingRepository:
    """Acceso a la colección ``bookings``. Sólo escrituras de un documento."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db.bookings

    async def insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        res = await self.collection.insert_one(doc)
        return await self.collection.find_one({"_id": res.inserted_id})

    async def get(self, booking_id: Any) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one({"_id": to_object_id(booking_id, "booking_id")})

    async def list_for_party(
        self,
        uid: Optional[str],
        status: Optional[str] = None,
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if uid is not None:
            query["$or"] = [{"client_id": uid}, {"provider_id": uid}]
        if status:
            query["status"] = status
        return await self.collection.find(query).sort("start_at", 1).to_list(limit)

    async def update_status(
        self,
        booking_id: Any,
        expected_status: str,
        new_status: str,
        history_entry: Dict[str, Any],
        extra: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Escritura condicional: sólo aplica si el estado sigue siendo ``expected_status``.
        Devuelve None si otro escritor se adelantó.
        """
        fields = {"status": new_status, "updated_at": history_entry["at"]}
        if extra:
            fields.update(extra)
        return await self.collection.find_one_and_update(
            {"_id": to_object_id(booking_id, "booking_id"), "status": expected_status},
            {"$set": fields, "$push": {"status_history": history_entry}},
            return_document=ReturnDocument.AFTER,
        )

    async def set_fields(self, booking_id: Any, fields: Dict[str, Any]) -> None:
        await self.collection.update_one({"_id": to_object_id(booking_id, "booking_id")}, {"$set": fields})

    async def find_stale_pending(self, cutoff: datetime, limit: int = 1000) -> List[Dict[str, Any]]:
        return await self.collection.find({
            "status": "PENDING",
            "created_at": {"$lte": cutoff},
        }).sort("created_at", 1).to_list(limit)

# marketplace/repositories/directory.py
from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase


class DirectoryRepository:
    """
    Lectura de usuarios, proveedores y servicios.
    Estas colecciones pertenecen a la gestión de usuarios; aquí sólo se consultan por id.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get_user(self, uid: Optional[str]) -> Optional[Dict[str, Any]]:
        if not uid:
            return None
        return await self.db.users.find_one({"_id": uid})

    async def get_provider(self, uid: Optional[str]) -> Optional[Dict[str, Any]]:
        if not uid:
            return None
        return await self.db.providers.find_one({"_id": uid})

    async def get_service(self, service_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not service_id:
            return None
        return await self.db.services.find_one({"_id": service_id})

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional
from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError

from .config import get_settings

settings = get_settings()
ALGO = "HS256"
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

CLIENT = "CLIENT"
PROVIDER = "PROVIDER"
ADMIN = "ADMIN"
SYSTEM = "SYSTEM"


@dataclass(frozen=True)
class Actor:
    """Identidad verificada por el proveedor de autenticación externo."""

    uid: str
    roles: frozenset = field(default_factory=frozenset)

    def has_role(self, role: str) -> bool:
        return role in self.roles

    @property
    def is_admin(self) -> bool:
        return ADMIN in self.roles or SYSTEM in self.roles

    @property
    def is_system(self) -> bool:
        return SYSTEM in self.roles

    @classmethod
    def system(cls) -> "Actor":
        return cls(uid="system", roles=frozenset({SYSTEM}))


def create_access_token(user_id: str, roles: Iterable[str] = (CLIENT,), expires_hours: Optional[int] = None) -> str:
    expire = datetime.utcnow() + timedelta(hours=expires_hours or 8)
    payload = {"sub": user_id, "roles": sorted(set(roles)), "exp": expire}
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)


async def get_current_actor(token: str = Depends(oauth2_scheme)) -> Actor:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[ALGO])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=401, detail="Invalid token")
    roles = payload.get("roles") or [CLIENT]
    # SYSTEM nunca viene de un token externo
    return Actor(uid=str(sub), roles=frozenset(r for r in roles if r != SYSTEM))


async def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if not actor.is_admin:
        raise HTTPException(status_code=403, detail="Admin role required")
    return actor

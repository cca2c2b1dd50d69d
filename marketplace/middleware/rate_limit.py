"""
Rate limiting por endpoint usando slowapi
"""
from fastapi import Request, HTTPException
from limits import parse
from slowapi import Limiter
from slowapi.util import get_remote_address


def build_limiter() -> Limiter:
    return Limiter(key_func=get_remote_address)


def apply_rate_limit(request: Request, limit: str):
    """
    Aplica rate limiting a un endpoint específico.
    Uso: apply_rate_limit(request, "5/minute")

    Si el limiter no está configurado (por ejemplo, en tests), no hace nada.
    """
    limiter = getattr(request.app.state, "limiter", None)
    if limiter is None:
        return

    key = get_remote_address(request)
    # slowapi delega en la estrategia de `limits`; contador por ruta + IP
    if not limiter.limiter.hit(parse(limit), request.url.path, key):
        raise HTTPException(
            status_code=429,
            detail=f"Too many requests. Limit: {limit}.",
        )

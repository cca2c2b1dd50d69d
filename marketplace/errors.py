"""
Errores de dominio del marketplace.

Cada error lleva su código HTTP para que el handler de ``main`` los traduzca
sin lógica adicional en los routers.
"""
from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    status_code: int = 400
    code: str = "ERROR"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        payload.update(self.details)
        return payload


class ValidationError(MarketplaceError):
    status_code = 400
    code = "VALIDATION_ERROR"


class ForbiddenError(MarketplaceError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(MarketplaceError):
    status_code = 404
    code = "NOT_FOUND"


class InvalidTransitionError(MarketplaceError):
    """Transición fuera del grafo; ``current_status`` es el estado real del documento."""

    status_code = 409
    code = "INVALID_TRANSITION"

    def __init__(self, current_status: str, target_status: str) -> None:
        super().__init__(
            f"Transition not allowed: {current_status} -> {target_status}",
            details={"currentStatus": current_status, "targetStatus": target_status},
        )
        self.current_status = current_status
        self.target_status = target_status


class DuplicatePaymentError(MarketplaceError):
    status_code = 409
    code = "DUPLICATE_PAYMENT"


class GatewayError(MarketplaceError):
    """Fallo de la pasarela; conserva el status y el mensaje crudo para diagnóstico."""

    code = "GATEWAY_ERROR"

    def __init__(
        self,
        gateway: str,
        message: str,
        *,
        status_code: Optional[int] = None,
        raw: Any = None,
    ) -> None:
        super().__init__(message, details={"gateway": gateway})
        self.gateway = gateway
        self.status_code = status_code if status_code and status_code >= 400 else 502
        self.raw = raw


class ConfigurationError(MarketplaceError):
    status_code = 500
    code = "CONFIGURATION_ERROR"

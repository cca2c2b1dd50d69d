# marketplace/utils.py
from typing import Any, Dict, Optional
from bson import ObjectId
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

from .errors import ValidationError

def to_id(doc: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Convierte _id -> id (str) y todos los ObjectIds a strings.
    También convierte datetime a ISO format strings.
    Si doc es None, devuelve {}.
    """
    if doc is None:
        return {}
    d = dict(doc)

    if "_id" in d:
        d["id"] = str(d.pop("_id"))

    for key, value in d.items():
        if isinstance(value, ObjectId):
            d[key] = str(value)
        elif isinstance(value, datetime):
            d[key] = value.isoformat()
        elif isinstance(value, dict):
            d[key] = to_id(value)
        elif isinstance(value, list):
            d[key] = [
                str(item) if isinstance(item, ObjectId)
                else item.isoformat() if isinstance(item, datetime)
                else to_id(item) if isinstance(item, dict)
                else item
                for item in value
            ]

    return d

# ==================== Tiempo ====================

def utcnow() -> datetime:
    """UTC naive, igual que lo devuelve pymongo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def as_utc(value: datetime) -> datetime:
    """Normaliza un datetime (aware o naive) a UTC naive."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value

# ==================== Importes ====================

def to_minor_units(amount: Any, exponent: int = 2) -> int:
    """
    Convierte un importe en unidades mayores (SAR) a la unidad mínima (halalas).
    Redondeo half-up sobre la representación decimal: 1.005 -> 101.
    """
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {amount}")
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount}")
    scaled = value * (Decimal(10) ** exponent)
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

def round_money(amount: Any) -> float:
    return float(Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))

# ==================== Utilidades de Base de Datos ====================

def to_object_id(value: str, field_name: str = "id") -> ObjectId:
    """
    Convierte un string a ObjectId con validación.
    """
    if isinstance(value, ObjectId):
        return value
    if not ObjectId.is_valid(value):
        raise ValidationError(f"Invalid {field_name}: {value}")
    return ObjectId(value)

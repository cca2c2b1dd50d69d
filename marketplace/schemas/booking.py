from pydantic import BaseModel, Field
from enum import Enum
from datetime import datetime
from typing import List, Optional

class BookingStatus(str, Enum):
    pending               = "PENDING"
    accepted              = "ACCEPTED"
    rejected              = "REJECTED"
    confirmed             = "CONFIRMED"
    in_progress           = "IN_PROGRESS"
    completed             = "COMPLETED"
    cancelled_by_client   = "CANCELLED_BY_CLIENT"
    cancelled_by_provider = "CANCELLED_BY_PROVIDER"
    no_show               = "NO_SHOW"
    refunded              = "REFUNDED"
    disputed              = "DISPUTED"

class BookingCreate(BaseModel):
    provider_id: str
    service_id: str
    start_at: datetime
    end_at: datetime
    price_total: float = Field(..., ge=0)
    deposit_amount: float = Field(0, ge=0)
    address_text: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    notes: Optional[str] = Field(None, max_length=1000)

class StatusChange(BaseModel):
    from_status: BookingStatus = Field(..., alias="from")
    to_status: BookingStatus = Field(..., alias="to")
    actor: str
    at: datetime

    model_config = {"populate_by_name": True}

class BookingOut(BaseModel):
    id: str
    client_id: str
    provider_id: str
    service_id: str
    start_at: datetime
    end_at: datetime
    booking_date: str
    status: BookingStatus
    price_total: float
    deposit_amount: float = 0
    address_text: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    status_reason: Optional[str] = None
    payment_status: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    status_history: List[StatusChange] = []

class StatusPatch(BaseModel):
    status: BookingStatus
    reason: Optional[str] = Field(None, max_length=200)

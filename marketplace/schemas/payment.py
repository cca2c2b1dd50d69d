from pydantic import BaseModel, ConfigDict, Field, field_validator
from enum import Enum
from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Optional, Union

class PaymentStatus(str, Enum):
    created = "CREATED"
    authorized = "AUTHORIZED"
    captured = "CAPTURED"
    voided = "VOIDED"
    refunded = "REFUNDED"
    failed = "FAILED"

class PaymentGateway(str, Enum):
    paypal = "PAYPAL"
    stripe = "STRIPE"
    moyasar = "MOYASAR"

class PayType(str, Enum):
    deposit = "DEPOSIT"
    full = "FULL"

class PaymentOut(BaseModel):
    id: str
    booking_id: Optional[str] = None
    client_id: Optional[str] = None
    provider_id: Optional[str] = None
    pay_type: Optional[PayType] = None
    gateway: PaymentGateway
    status: PaymentStatus
    amount: float
    currency: str
    amount_sar: Optional[float] = None
    amount_usd: Optional[float] = None
    fx_rate: Optional[float] = None
    order_id: str
    authorization_id: Optional[str] = None
    capture_id: Optional[str] = None
    refund_id: Optional[str] = None
    platform_fee: Optional[float] = None
    gateway_fee: Optional[float] = None
    provider_amount: Optional[float] = None
    refund_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    captured_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

# ---------- Moyasar ----------

class MoyasarCreatePayment(_CamelModel):
    amount: float = Field(..., gt=0)
    currency: str = "SAR"
    description: Optional[str] = None
    callback_url: Optional[str] = Field(None, alias="callbackUrl")
    metadata: Dict[str, Any] = Field(default_factory=dict)

class MoyasarRefund(_CamelModel):
    amount: Optional[float] = Field(None, gt=0)

class ApplePaySessionRequest(BaseModel):
    validation_url: str
    display_name: Optional[str] = None
    domain_name: Optional[str] = None

# ---------- PayPal ----------

class PayPalCreateOrder(_CamelModel):
    amount_sar: float = Field(..., gt=0, alias="amountSar")
    booking_id: Optional[str] = Field(None, alias="bookingId")

class PayPalOrderMetaRequest(_CamelModel):
    order_id: str = Field(..., alias="orderId")

class PayPalAuthorizeRequest(_CamelModel):
    order_id: str = Field(..., alias="orderId")
    authorization_id: str = Field(..., alias="authorizationId")

class PayPalAuthorizationAction(_CamelModel):
    authorization_id: str = Field(..., alias="authorizationId")

# ---------- Stripe ----------

class StripeCreateIntent(_CamelModel):
    amount_sar: float = Field(..., gt=0, alias="amountSar")
    booking_id: Optional[str] = Field(None, alias="bookingId")

class StripeConfirmRequest(_CamelModel):
    payment_intent_id: str = Field(..., alias="paymentIntentId")

# ---------- Payloads de pasarela (variantes etiquetadas) ----------

class MoyasarPayload(BaseModel):
    """Webhook/callback de Moyasar; amount en halalas."""
    gateway: Literal["MOYASAR"] = "MOYASAR"
    id: str = Field(..., min_length=1)
    status: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_default(cls, v):
        return v or {}

class PayPalPayload(BaseModel):
    """Resultado de la aprobación en el SDK JS de PayPal."""
    gateway: Literal["PAYPAL"] = "PAYPAL"
    order_id: str = Field(..., min_length=1)
    authorization_id: str = Field(..., min_length=1)
    status: Optional[str] = None

class StripePayload(BaseModel):
    """Estado de un PaymentIntent (objeto del SDK o del evento de webhook)."""
    gateway: Literal["STRIPE"] = "STRIPE"
    id: str = Field(..., min_length=1)
    status: str = Field(..., min_length=1)
    client_secret: str = Field(..., min_length=1)
    amount: Optional[int] = None
    currency: Optional[str] = None
    latest_charge: Optional[str] = None
    last_payment_error: Optional[Dict[str, Any]] = None

GatewayPayload = Annotated[
    Union[MoyasarPayload, PayPalPayload, StripePayload],
    Field(discriminator="gateway"),
]

"""
Checkout endpoint - saga (ברירת מחדל) או נעילת שורות כש-CHECKOUT_USE_SAGA=false.
"""
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field, field_validator

from app.api.dependencies.services import get_services
from app.core.validation import PhoneNumberValidator
from app.domain.container import ServiceContainer

router = APIRouter()


class CheckoutRequest(BaseModel):
    phone: str = Field(description="טלפון הלקוח בפורמט E.164")
    payment_method: str = Field(default="cod", max_length=30)
    shipping_address: Optional[str] = Field(default=None, max_length=500)
    shipping_method: Optional[str] = Field(default=None, max_length=50)

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        normalized = PhoneNumberValidator.normalize(v)
        if not PhoneNumberValidator.validate(normalized):
            raise ValueError("Invalid phone number")
        return normalized

    @field_validator("payment_method")
    @classmethod
    def normalize_method(cls, v: str) -> str:
        return v.strip().lower()


class CheckoutResponse(BaseModel):
    success: bool
    message: str
    next_step: str
    order_id: Optional[int] = None
    payment_status: Optional[str] = None
    total: Optional[str] = None
    saga_id: Optional[str] = None
    failed_step: Optional[str] = None
    error: Optional[str] = None
    compensated: bool = False


@router.post(
    "",
    response_model=CheckoutResponse,
    summary="Checkout",
    description=(
        "הפיכת העגלה הפעילה של הלקוח להזמנה. כשלון מחזיר success=false עם הודעה "
        "ללקוח ו-next_step. Idempotency-Key קבוע מחזיר את התוצאה השמורה."
    ),
    responses={
        409: {"description": "checkout עם אותו Idempotency-Key כבר רץ"},
        500: {"description": "compensation נכשל - נדרשת התערבות ידנית"},
    },
)
async def checkout(
    body: CheckoutRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key", max_length=100),
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    checkout_data = body.model_dump(exclude={"phone"})
    saga_id = f"checkout_{idempotency_key}" if idempotency_key else None
    outcome = await services.checkout(body.phone, checkout_data, saga_id=saga_id)
    return outcome.to_dict()

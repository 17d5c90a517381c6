from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

from dotke.schemas.booking import BookingResponse


class PaymentInitiateRequest(BaseModel):
    domain_name: str = Field(..., description="label or full name, e.g. foo or foo.co.ke")
    owner_id: str = Field(..., min_length=1)
    phone: str = Field(..., description="M-PESA number, e.g. 0712345678 or 254712345678")


class OutcomeResponse(BaseModel):
    kind: str
    message: str
    charged: bool
    requires_manual_reconciliation: bool
    receipt: Optional[str] = None
    booking: Optional[BookingResponse] = None


class AttemptResponse(BaseModel):
    attempt_id: str
    domain_name: str
    owner_id: str
    amount: int
    currency: str
    account_reference: str
    state: str
    status: str
    correlation_id: Optional[str] = None
    started_at: datetime
    outcome: Optional[OutcomeResponse] = None


class ReconciliationEntry(BaseModel):
    attempt_id: str
    kind: str
    domain_name: str
    owner_id: str
    amount: int
    payer_phone: str
    correlation_id: Optional[str] = None
    account_reference: str
    receipt: Optional[str] = None
    message: str
    recorded_at: datetime

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from payflow.models import PaymentMethod, PaymentStatus


class CheckoutItemIn(BaseModel):
    product_id: str
    quantity: int


class CheckoutCreate(BaseModel):
    user_id: str
    items: List[CheckoutItemIn]


class CheckoutUpdate(BaseModel):
    user_id: Optional[str] = None
    items: Optional[List[CheckoutItemIn]] = None


class PaymentCreate(BaseModel):
    checkout_id: str
    method: PaymentMethod
    transaction_id: Optional[str] = None


class CheckoutItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    checkout_id: str
    product_id: str
    quantity: int
    subtotal: Decimal
    created_at: datetime
    updated_at: datetime


class CheckoutOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    items: List[CheckoutItemOut]
    total_amount: Decimal
    created_at: datetime
    updated_at: datetime


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    checkout_id: str
    amount: Decimal
    status: PaymentStatus
    method: PaymentMethod
    transaction_id: Optional[str] = None
    gateway_response: Optional[str] = None
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class PaymentStatusOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: PaymentStatus
    updated_at: datetime
    failure_reason: Optional[str] = None


class CheckoutPage(BaseModel):
    items: List[CheckoutOut]
    total: int
    page: int
    limit: int


class PaymentPage(BaseModel):
    items: List[PaymentOut]
    total: int
    page: int
    limit: int


class QueueStatus(BaseModel):
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    paused: bool

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict


class CustomerOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    name: str | None
    first_name: str | None
    last_name: str | None
    phone: str | None
    street_address: str | None
    city: str | None
    state: str | None
    zip_code: str | None
    created_at: datetime | None


class CustomerStatsOut(CustomerOut):
    order_count: int
    total_spent: Decimal
    last_payment_at: datetime | None


class CustomerListOut(BaseModel):
    success: bool = True
    customers: list[CustomerStatsOut]
    count: int


class CustomerProfileOut(BaseModel):
    success: bool = True
    customer: CustomerOut

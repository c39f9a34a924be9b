from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class ProductIn(BaseModel):
    title: str | None = None
    description: str | None = None
    weight: int | None = Field(default=None, gt=0)
    selling_price: Decimal | None = Field(default=None, ge=0)
    regular_price: Decimal | None = Field(default=None, ge=0)
    cost: Decimal | None = Field(default=None, ge=0)
    available: bool = True


class ProductOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: str | None
    weight: int
    selling_price: Decimal
    regular_price: Decimal
    available: bool
    image_url: str | None


class AdminProductOut(ProductOut):
    cost: Decimal | None
    image_uploaded_at: datetime | None
    stripe_product_id: str | None
    stripe_price_id: str | None
    stripe_price_amount: int | None
    stripe_synced_at: datetime | None
    stripe_active: bool
    created_at: datetime | None
    updated_at: datetime | None


class SyncIn(BaseModel):
    product_ids: list[int] | None = None

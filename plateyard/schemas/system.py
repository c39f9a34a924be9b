from typing import Any

from pydantic import BaseModel, EmailStr, Field


class StripeSettingsOut(BaseModel):
    success: bool = True
    default_tax_code: str


class StripeSettingsIn(BaseModel):
    default_tax_code: str | None = None


class ResetDatabaseIn(BaseModel):
    confirm: str = ""


class ResetDatabaseOut(BaseModel):
    success: bool = True
    deleted: dict[str, int]


class EmailTestIn(BaseModel):
    to: EmailStr
    subject: str = Field(default="Plate Yard test email", max_length=200)


class EmailTestOut(BaseModel):
    success: bool
    message_id: str | None = None
    error: str | None = None


class HealthOut(BaseModel):
    success: bool = True
    status: str
    checks: dict[str, Any]
    issues: list[str]

from pydantic import BaseModel, EmailStr, Field

from plateyard.core.security import MIN_PASSWORD_LENGTH


class SignupIn(BaseModel):
    email: EmailStr
    password: str = Field(min_length=MIN_PASSWORD_LENGTH, max_length=128)
    name: str | None = Field(default=None, max_length=200)
    phone: str | None = Field(default=None, max_length=40)


class LoginIn(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)


class AccountOut(BaseModel):
    id: int
    email: str
    name: str | None
    is_admin: bool

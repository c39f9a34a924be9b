from typing import Any

from pydantic import BaseModel


class OptionOut(BaseModel):
    option_name: str
    option_value: Any
    option_type: str
    category: str
    is_sensitive: bool
    description: str | None = None


class OptionsOut(BaseModel):
    success: bool = True
    options: list[OptionOut]
    count: int


class OptionEnvelope(BaseModel):
    success: bool = True
    option: OptionOut


class OptionValueIn(BaseModel):
    value: Any = None
    option_type: str | None = None
    category: str | None = None
    description: str | None = None
    is_sensitive: bool | None = None


class OptionsBatchIn(BaseModel):
    # kept loose so a non-list gets the descriptive error
    options: Any = None

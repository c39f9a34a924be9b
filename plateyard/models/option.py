from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text, false, func
from sqlalchemy.orm import Mapped, mapped_column

from plateyard.db.base import Base

OPTION_TYPES = ("string", "boolean", "number", "decimal", "json")


class Option(Base):
    __tablename__ = "options"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    option_name: Mapped[str] = mapped_column(
        String(120), unique=True, index=True, nullable=False
    )
    # always stored as text; option_type says how to read it back
    option_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    option_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default="string", server_default="string"
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_sensitive: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    category: Mapped[str] = mapped_column(
        String(60), nullable=False, default="general", server_default="general"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

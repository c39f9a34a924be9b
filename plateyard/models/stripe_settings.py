from datetime import datetime

from sqlalchemy import DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from plateyard.db.base import Base

DEFAULT_TAX_CODE = "txcd_99999999"


class StripeSettings(Base):
    """
    Single-row table. Use key='default' row.
    """

    __tablename__ = "stripe_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(
        String(40), unique=True, nullable=False, server_default="default"
    )

    default_tax_code: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
        default=DEFAULT_TAX_CODE,
        server_default=DEFAULT_TAX_CODE,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.crm.models import Base
from app.crm.modules.customers.models import Customer


class Payment(Base):
    """
    Ledger entry against a contracted customer. Never edited or deleted through the UI;
    negative amounts are refunds.
    """

    __tablename__ = "payments"
    __table_args__ = (
        Index("idx_payments_customer_id", "customer_id", "payment_time"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    payment_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_time: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[str] = mapped_column(String(150), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    customer: Mapped[Customer] = relationship("Customer", back_populates="payments")

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.crm.constants import STATUS_CLOSED, STATUS_COMMUNICATING
from app.crm.models import Base

if TYPE_CHECKING:
    from app.crm.modules.payments.models import Payment


class Customer(Base):
    """
    One table for both pipeline stages. Rows with status != "closed" are leads;
    the contract-only columns below are meaningful only once status == "closed".
    """

    __tablename__ = "customers"
    __table_args__ = (
        Index("idx_customers_owner", "owner"),
        Index("idx_customers_status", "status"),
        Index("idx_customers_stage2_status", "stage2_status"),
        Index("idx_customers_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    # Lead fields
    nickname: Mapped[str] = mapped_column(String(255), nullable=False)
    contact: Mapped[str] = mapped_column(String(255), nullable=False)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    intention: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=STATUS_COMMUNICATING)
    age: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gender: Mapped[str | None] = mapped_column(String(16), nullable=True)
    work_experience: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    owner: Mapped[str] = mapped_column(String(150), nullable=False)

    # Contract fields (status == "closed")
    real_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    target_company: Mapped[str | None] = mapped_column(String(255), nullable=True)
    hourly_rate: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    # Cache of SUM(payments.amount); rewritten from the ledger on every payment.
    wallet_balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    stage2_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    interview_notice_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    last_payment_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    follow_ups: Mapped[list["FollowUp"]] = relationship(
        "FollowUp",
        back_populates="customer",
        cascade="all, delete-orphan",
        order_by="FollowUp.id",
        lazy="selectin",
    )
    payments: Mapped[list["Payment"]] = relationship(
        "Payment",
        back_populates="customer",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="select",
    )

    @property
    def is_contracted(self) -> bool:
        return self.status == STATUS_CLOSED

    @property
    def display_name(self) -> str:
        return self.real_name or self.nickname

    @property
    def follow_up_count(self) -> int:
        return len(self.follow_ups)

    @property
    def last_follow_up(self) -> "FollowUp | None":
        return self.follow_ups[-1] if self.follow_ups else None


class FollowUp(Base):
    """Append-only follow-up note. Insertion order is id order."""

    __tablename__ = "customer_follow_ups"
    __table_args__ = (
        Index("idx_customer_follow_ups_customer_id", "customer_id", "id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)

    content: Mapped[str] = mapped_column(Text, nullable=False)
    author: Mapped[str | None] = mapped_column(String(150), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    customer: Mapped[Customer] = relationship("Customer", back_populates="follow_ups")

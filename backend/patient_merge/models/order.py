from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from patient_merge.models.base import Base, PatientRefMixin, TimestampMixin


class Order(Base, PatientRefMixin, TimestampMixin):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    product_code: Mapped[str] = mapped_column(String(64), nullable=False)
    amount_yen: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    shipping_status: Mapped[str | None] = mapped_column(String(40), nullable=True)


class Reorder(Base, PatientRefMixin, TimestampMixin):
    __tablename__ = "reorders"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    product_code: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(40), default="pending", nullable=False)

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from patient_merge.models.base import Base


class DedupIgnored(Base):
    __tablename__ = "dedup_ignored"
    __table_args__ = (
        UniqueConstraint("patient_id_a", "patient_id_b", name="uq_dedup_ignored_pair"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    patient_id_a: Mapped[str] = mapped_column(String(64), nullable=False)
    patient_id_b: Mapped[str] = mapped_column(String(64), nullable=False)
    note: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

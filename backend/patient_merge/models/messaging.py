from __future__ import annotations

from sqlalchemy import String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from patient_merge.models.base import Base, PatientRefMixin, TimestampMixin


class MessageLog(Base, PatientRefMixin, TimestampMixin):
    __tablename__ = "message_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    message_type: Mapped[str] = mapped_column(String(40), default="text", nullable=False)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)


class FriendFieldValue(Base, PatientRefMixin, TimestampMixin):
    __tablename__ = "friend_field_values"
    __table_args__ = (
        UniqueConstraint("patient_id", "field_id", name="uq_friend_field_values_patient_field"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    field_id: Mapped[int] = mapped_column(nullable=False)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)

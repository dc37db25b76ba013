from __future__ import annotations

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from patient_merge.models.base import Base, PatientRefMixin, TimestampMixin


class Intake(Base, PatientRefMixin, TimestampMixin):
    """Form responses collected before or during booking."""

    __tablename__ = "intake"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    form_key: Mapped[str] = mapped_column(String(64), nullable=False)
    answers: Mapped[dict | None] = mapped_column(JSON, nullable=True)

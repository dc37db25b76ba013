from __future__ import annotations

from sqlalchemy import String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from patient_merge.models.base import Base, PatientRefMixin, TimestampMixin


class PatientTag(Base, PatientRefMixin, TimestampMixin):
    __tablename__ = "patient_tags"
    __table_args__ = (UniqueConstraint("patient_id", "tag_id", name="uq_patient_tags_patient_tag"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tag_id: Mapped[int] = mapped_column(nullable=False)
    assigned_by: Mapped[str | None] = mapped_column(String(40), nullable=True)


class PatientMark(Base, PatientRefMixin, TimestampMixin):
    __tablename__ = "patient_marks"
    __table_args__ = (UniqueConstraint("patient_id", name="uq_patient_marks_patient"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    mark: Mapped[str] = mapped_column(String(40), nullable=False)
    note: Mapped[str | None] = mapped_column(String(200), nullable=True)

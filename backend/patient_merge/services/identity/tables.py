from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from patient_merge.models import (
    FriendFieldValue,
    Intake,
    MessageLog,
    Order,
    PatientMark,
    PatientTag,
    Reorder,
    Reservation,
)


@dataclass(frozen=True)
class DependentTable:
    """A table whose rows point at one person through ``patient_id``.

    ``unique_key`` lists the columns that, together with ``patient_id``, form a
    unique index. ``()`` means one row per person; ``None`` means rows can
    always be repointed.
    """

    model: type
    unique_key: tuple[str, ...] | None = None

    @property
    def name(self) -> str:
        return self.model.__tablename__

    @property
    def is_keyed(self) -> bool:
        return self.unique_key is not None

    def _key_columns(self):
        return [getattr(self.model, column) for column in self.unique_key or ()]

    def count_rows(self, session: Session, person_id: str) -> int:
        return int(
            session.scalar(
                select(func.count()).select_from(self.model).where(self.model.patient_id == person_id)
            )
            or 0
        )

    def keyed_rows(self, session: Session, person_id: str) -> list[tuple[int, tuple]]:
        stmt = (
            select(self.model.id, *self._key_columns())
            .where(self.model.patient_id == person_id)
            .order_by(self.model.id)
        )
        return [(int(row[0]), tuple(row[1:])) for row in session.execute(stmt).all()]

    def keys_for(self, session: Session, person_id: str) -> set[tuple]:
        return {key for _, key in self.keyed_rows(session, person_id)}

    def repoint(self, session: Session, losing_id: str, canonical_id: str) -> int:
        result = session.execute(
            update(self.model)
            .where(self.model.patient_id == losing_id)
            .values(patient_id=canonical_id)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    def delete_rows(self, session: Session, row_ids: Iterable[int]) -> int:
        ids = list(row_ids)
        if not ids:
            return 0
        result = session.execute(
            delete(self.model)
            .where(self.model.id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    def count_references(self, session: Session, person_ids: Iterable[str]) -> int:
        ids = list(person_ids)
        if not ids:
            return 0
        return int(
            session.scalar(
                select(func.count()).select_from(self.model).where(self.model.patient_id.in_(ids))
            )
            or 0
        )

    def count_by_person(self, session: Session, person_ids: Iterable[str]) -> dict[str, int]:
        ids = list(person_ids)
        if not ids:
            return {}
        rows = session.execute(
            select(self.model.patient_id, func.count())
            .where(self.model.patient_id.in_(ids))
            .group_by(self.model.patient_id)
        ).all()
        return {patient_id: int(count) for patient_id, count in rows}


DEPENDENT_TABLES: tuple[DependentTable, ...] = (
    DependentTable(Reservation),
    DependentTable(Order),
    DependentTable(Reorder),
    DependentTable(MessageLog),
    DependentTable(PatientTag, unique_key=("tag_id",)),
    DependentTable(PatientMark, unique_key=()),
    DependentTable(FriendFieldValue, unique_key=("field_id",)),
    DependentTable(Intake),
)


# Shown beside weak-group candidates for manual review.
ACTIVITY_TABLES: tuple[DependentTable, ...] = tuple(
    table for table in DEPENDENT_TABLES if table.model in (Reservation, Order)
)


def table_names(tables: Iterable[DependentTable] = DEPENDENT_TABLES) -> list[str]:
    return [table.name for table in tables]

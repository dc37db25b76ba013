from __future__ import annotations

import logging
from typing import Iterable, Iterator

from sqlalchemy import select
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from patient_merge.models import DedupIgnored, Patient
from patient_merge.services.identity.errors import DataStoreUnavailable
from patient_merge.services.identity.tables import ACTIVITY_TABLES, DependentTable
from patient_merge.services.identity.types import PersonRecord

logger = logging.getLogger(__name__)


def is_connectivity_error(exc: BaseException) -> bool:
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    return bool(getattr(exc, "connection_invalidated", False))


def ignored_pair_key(person_a: str, person_b: str) -> tuple[str, str]:
    first, second = sorted((person_a, person_b))
    return first, second


def _chunks(items: list[str], size: int) -> Iterator[list[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class PatientStore:
    """Read side of the data store, plus the ignore-list writes.

    Full-table reads page through rows by primary key and stop at the first
    page shorter than ``page_size``.
    """

    def __init__(self, session: Session, page_size: int = 500, chunk_size: int = 500) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.session = session
        self.page_size = page_size
        self.chunk_size = chunk_size

    def iter_patients(self, tenant_id: str | None = None) -> Iterator[Patient]:
        last_id: str | None = None
        while True:
            stmt = select(Patient).order_by(Patient.id).limit(self.page_size)
            if tenant_id is not None:
                stmt = stmt.where(Patient.tenant_id == tenant_id)
            if last_id is not None:
                stmt = stmt.where(Patient.id > last_id)
            page = self._fetch(stmt)
            yield from page
            if len(page) < self.page_size:
                break
            last_id = page[-1].id

    def load_person_records(self, tenant_id: str | None = None) -> list[PersonRecord]:
        records = [PersonRecord.from_model(patient) for patient in self.iter_patients(tenant_id)]
        logger.info(
            "Person snapshot loaded",
            extra={"tenant_id": tenant_id, "records": len(records), "page_size": self.page_size},
        )
        return records

    def load_person_record(self, person_id: str) -> PersonRecord | None:
        patients = self._fetch(select(Patient).where(Patient.id == person_id))
        return PersonRecord.from_model(patients[0]) if patients else None

    def load_ignored_pairs(self) -> set[tuple[str, str]]:
        pairs: set[tuple[str, str]] = set()
        last_id = 0
        while True:
            stmt = (
                select(DedupIgnored.id, DedupIgnored.patient_id_a, DedupIgnored.patient_id_b)
                .where(DedupIgnored.id > last_id)
                .order_by(DedupIgnored.id)
                .limit(self.page_size)
            )
            page = self._execute_all(stmt)
            for _, person_a, person_b in page:
                pairs.add(ignored_pair_key(person_a, person_b))
            if len(page) < self.page_size:
                break
            last_id = page[-1][0]
        return pairs

    def existing_person_ids(self, person_ids: Iterable[str]) -> set[str]:
        found: set[str] = set()
        for chunk in _chunks(sorted(set(person_ids)), self.chunk_size):
            found.update(self._fetch(select(Patient.id).where(Patient.id.in_(chunk))))
        return found

    def count_references(self, table: DependentTable, person_ids: Iterable[str]) -> int:
        total = 0
        for chunk in _chunks(sorted(set(person_ids)), self.chunk_size):
            try:
                total += table.count_references(self.session, chunk)
            except SQLAlchemyError as exc:
                self._raise_if_unavailable(exc)
                raise
        return total

    def activity_counts(
        self,
        person_ids: Iterable[str],
        tables: Iterable[DependentTable] = ACTIVITY_TABLES,
    ) -> dict[str, dict[str, int]]:
        """Rows per person in each of ``tables``, zero-filled."""
        ids = sorted(set(person_ids))
        counts: dict[str, dict[str, int]] = {person_id: {} for person_id in ids}
        for table in tables:
            found: dict[str, int] = {}
            for chunk in _chunks(ids, self.chunk_size):
                try:
                    found.update(table.count_by_person(self.session, chunk))
                except SQLAlchemyError as exc:
                    self._raise_if_unavailable(exc)
                    raise
            for person_id in ids:
                counts[person_id][table.name] = found.get(person_id, 0)
        return counts

    def add_ignored_pair(self, person_a: str, person_b: str, note: str | None = None) -> bool:
        if person_a == person_b:
            raise ValueError("Cannot ignore a pair made of the same person id.")
        first, second = ignored_pair_key(person_a, person_b)
        existing = self.session.scalar(
            select(DedupIgnored).where(
                DedupIgnored.patient_id_a == first,
                DedupIgnored.patient_id_b == second,
            )
        )
        if existing:
            return False
        self.session.add(DedupIgnored(patient_id_a=first, patient_id_b=second, note=note))
        self.session.flush()
        return True

    def remove_ignored_pair(self, person_a: str, person_b: str) -> bool:
        first, second = ignored_pair_key(person_a, person_b)
        existing = self.session.scalar(
            select(DedupIgnored).where(
                DedupIgnored.patient_id_a == first,
                DedupIgnored.patient_id_b == second,
            )
        )
        if not existing:
            return False
        self.session.delete(existing)
        self.session.flush()
        return True

    def _fetch(self, stmt) -> list:
        try:
            return list(self.session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            self._raise_if_unavailable(exc)
            raise

    def _execute_all(self, stmt) -> list:
        try:
            return list(self.session.execute(stmt).all())
        except SQLAlchemyError as exc:
            self._raise_if_unavailable(exc)
            raise

    @staticmethod
    def _raise_if_unavailable(exc: SQLAlchemyError) -> None:
        if is_connectivity_error(exc):
            raise DataStoreUnavailable(f"Data store unreachable: {exc}") from exc

from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from patient_merge.models import (
    Base,
    FriendFieldValue,
    Intake,
    MessageLog,
    Order,
    Patient,
    PatientMark,
    PatientTag,
    Reorder,
    Reservation,
)

_ROW_DEFAULTS = {
    Reservation: {"reserved_at": datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)},
    Order: {"product_code": "MJ-2.5"},
    Reorder: {"product_code": "MJ-5"},
    MessageLog: {"direction": "incoming", "content": "hello"},
    PatientTag: {"tag_id": 1},
    PatientMark: {"mark": "red"},
    FriendFieldValue: {"field_id": 1, "value": "x"},
    Intake: {"form_key": "first_visit", "answers": {"q1": "yes"}},
}


def day(number: int) -> datetime:
    return datetime(2024, 1, number, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def add_patient(session):
    def _add(patient_id, *, created_day=1, updated_day=None, **fields):
        session.add(
            Patient(
                id=patient_id,
                created_at=day(created_day),
                updated_at=day(updated_day or created_day),
                **fields,
            )
        )
        session.commit()
        return patient_id

    return _add


@pytest.fixture
def add_row(session):
    def _add(model, patient_id, **fields):
        values = {**_ROW_DEFAULTS[model], **fields}
        row = model(patient_id=patient_id, **values)
        session.add(row)
        session.commit()
        return row.id

    return _add

from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from patient_merge.core.settings import Settings


def build_engine(settings: Settings) -> Engine:
    return create_engine(settings.database_url, pool_pre_ping=True)


def build_session_factory(settings: Settings, engine: Engine | None = None) -> sessionmaker[Session]:
    bind = engine if engine is not None else build_engine(settings)
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)

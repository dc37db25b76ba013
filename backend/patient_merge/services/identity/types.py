from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from patient_merge.services.identity.normalize import normalize_birthday, normalize_phone

MERGEABLE_FIELDS = ("name", "name_kana", "sex", "birthday", "phone", "messaging_user_id")
EXTRA_PREFIX = "extra."

_KNOWN_FIELDS = frozenset(
    {"id", "tenant_id", "created_at", "updated_at", "additional", *MERGEABLE_FIELDS}
)


class Confidence(str, enum.Enum):
    strong = "strong"
    weak = "weak"


class MatchKind(str, enum.Enum):
    messaging_id = "messaging_id"
    phone = "phone"
    name = "name"
    name_birthday = "name_birthday"
    name_kana_sex = "name_kana_sex"
    operator = "operator"


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PersonRecord(BaseModel):
    """Immutable snapshot of one person as the matcher and resolver see it."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    tenant_id: str | None = None
    name: str | None = None
    name_kana: str | None = None
    sex: str | None = None
    birthday: date | None = None
    phone: str | None = None
    messaging_user_id: str | None = None
    created_at: datetime
    updated_at: datetime
    additional: dict[str, Any] = Field(default_factory=dict)

    @field_validator("phone", mode="before")
    @classmethod
    def _normalize_phone(cls, value):
        return normalize_phone(value) or None

    @field_validator("birthday", mode="before")
    @classmethod
    def _normalize_birthday(cls, value):
        return normalize_birthday(value)

    @field_validator("name", "name_kana", "sex", "messaging_user_id", "tenant_id", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @field_validator("created_at", "updated_at")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "PersonRecord":
        known = {key: value for key, value in payload.items() if key in _KNOWN_FIELDS}
        extras = {key: value for key, value in payload.items() if key not in _KNOWN_FIELDS}
        additional = dict(known.pop("additional", None) or {})
        additional.update(extras)
        if "updated_at" not in known or known["updated_at"] is None:
            known["updated_at"] = known.get("created_at")
        return cls(**known, additional=additional)

    @classmethod
    def from_model(cls, patient) -> "PersonRecord":
        return cls.from_payload(
            {
                "id": patient.id,
                "tenant_id": patient.tenant_id,
                "name": patient.name,
                "name_kana": patient.name_kana,
                "sex": patient.sex,
                "birthday": patient.birthday,
                "phone": patient.phone,
                "messaging_user_id": patient.messaging_user_id,
                "created_at": patient.created_at,
                "updated_at": patient.updated_at,
                "additional": patient.extra or {},
            }
        )

    def value_of(self, field_name: str) -> Any:
        if field_name.startswith(EXTRA_PREFIX):
            return self.additional.get(field_name[len(EXTRA_PREFIX):])
        return getattr(self, field_name)


@dataclass(frozen=True)
class MatchReason:
    kind: MatchKind
    value: str
    person_ids: tuple[str, ...]

    def as_dict(self) -> dict[str, object]:
        return {"kind": self.kind.value, "value": self.value, "person_ids": list(self.person_ids)}


@dataclass(frozen=True)
class DuplicateGroup:
    confidence: Confidence
    person_ids: tuple[str, ...]
    reasons: tuple[MatchReason, ...] = ()

    def as_dict(self) -> dict[str, object]:
        return {
            "confidence": self.confidence.value,
            "person_ids": list(self.person_ids),
            "reasons": [reason.as_dict() for reason in self.reasons],
        }


@dataclass(frozen=True)
class FieldAdoption:
    field: str
    value: Any
    source_id: str
    reason: str

    def as_dict(self) -> dict[str, object]:
        return {
            "field": self.field,
            "value": jsonable(self.value),
            "source_id": self.source_id,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class MergePlan:
    canonical_id: str
    losing_ids: tuple[str, ...]
    field_updates: dict[str, Any] = field(default_factory=dict)
    adoptions: tuple[FieldAdoption, ...] = ()
    reasons: tuple[MatchReason, ...] = ()

    def as_dict(self) -> dict[str, object]:
        return {
            "canonical_id": self.canonical_id,
            "losing_ids": list(self.losing_ids),
            "field_updates": {key: jsonable(value) for key, value in self.field_updates.items()},
            "adoptions": [adoption.as_dict() for adoption in self.adoptions],
            "reasons": [reason.as_dict() for reason in self.reasons],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "MergePlan":
        try:
            return cls(
                canonical_id=str(payload["canonical_id"]),
                losing_ids=tuple(str(item) for item in payload["losing_ids"]),
                field_updates=dict(payload.get("field_updates") or {}),
                adoptions=tuple(
                    FieldAdoption(
                        field=item["field"],
                        value=item["value"],
                        source_id=item["source_id"],
                        reason=item["reason"],
                    )
                    for item in payload.get("adoptions") or []
                ),
                reasons=tuple(
                    MatchReason(
                        kind=MatchKind(item["kind"]),
                        value=item["value"],
                        person_ids=tuple(item["person_ids"]),
                    )
                    for item in payload.get("reasons") or []
                ),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid merge plan payload: {exc}") from exc

    def to_json(self) -> str:
        return json.dumps(self.as_dict(), sort_keys=True, ensure_ascii=False, separators=(",", ":"))

    @property
    def fingerprint(self) -> str:
        return hashlib.sha256(self.to_json().encode("utf-8")).hexdigest()


def jsonable(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(item) for item in value]
    return value

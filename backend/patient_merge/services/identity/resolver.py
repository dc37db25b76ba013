from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from patient_merge.services.identity.errors import MatchAmbiguity
from patient_merge.services.identity.matcher import is_placeholder
from patient_merge.services.identity.normalize import normalize_name, normalize_phone
from patient_merge.services.identity.types import (
    EXTRA_PREFIX,
    MERGEABLE_FIELDS,
    Confidence,
    DuplicateGroup,
    FieldAdoption,
    MatchKind,
    MatchReason,
    MergePlan,
    PersonRecord,
)

logger = logging.getLogger(__name__)

ADOPT_FILL_EMPTY = "fill_empty"
ADOPT_NEWER_VALUE = "newer_value"


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict, tuple, set)):
        return not value
    return False


def _comparable(field_name: str, value: Any) -> Any:
    if value is None:
        return None
    if field_name == "phone":
        return normalize_phone(value)
    if field_name in {"name", "name_kana"}:
        return normalize_name(value)
    if isinstance(value, str):
        return value.strip()
    return value


def canonical_sort_key(record: PersonRecord, placeholder_prefix: str) -> tuple:
    """Verified records first, then the earliest created, then the smallest id."""
    return (
        is_placeholder(record, placeholder_prefix),
        record.created_at,
        record.id,
    )


def choose_canonical(records: Iterable[PersonRecord], placeholder_prefix: str) -> PersonRecord:
    ordered = sorted(records, key=lambda record: canonical_sort_key(record, placeholder_prefix))
    if not ordered:
        raise ValueError("Cannot choose a canonical record from an empty group.")
    return ordered[0]


def _most_recent_first(records: Iterable[PersonRecord]) -> list[PersonRecord]:
    return sorted(records, key=lambda record: (record.updated_at, record.created_at, record.id), reverse=True)


def resolve_field(
    field_name: str,
    canonical: PersonRecord,
    losing: list[PersonRecord],
) -> FieldAdoption | None:
    current = canonical.value_of(field_name)
    candidates = [
        record
        for record in _most_recent_first(losing)
        if not _is_empty(record.value_of(field_name))
    ]
    if not candidates:
        return None

    if _is_empty(current):
        source = candidates[0]
        return FieldAdoption(
            field=field_name,
            value=source.value_of(field_name),
            source_id=source.id,
            reason=ADOPT_FILL_EMPTY,
        )

    current_cmp = _comparable(field_name, current)
    for record in candidates:
        value = record.value_of(field_name)
        if _comparable(field_name, value) == current_cmp:
            continue
        if record.updated_at > canonical.updated_at:
            return FieldAdoption(
                field=field_name,
                value=value,
                source_id=record.id,
                reason=ADOPT_NEWER_VALUE,
            )
    return None


def _fields_to_resolve(canonical: PersonRecord, losing: list[PersonRecord]) -> list[str]:
    extra_keys = set(canonical.additional)
    for record in losing:
        extra_keys.update(record.additional)
    return list(MERGEABLE_FIELDS) + [f"{EXTRA_PREFIX}{key}" for key in sorted(extra_keys)]


def _plan_for(
    canonical: PersonRecord,
    losing: list[PersonRecord],
    reasons: tuple[MatchReason, ...],
) -> MergePlan:
    adoptions: list[FieldAdoption] = []
    for field_name in _fields_to_resolve(canonical, losing):
        adoption = resolve_field(field_name, canonical, losing)
        if adoption is not None:
            adoptions.append(adoption)

    return MergePlan(
        canonical_id=canonical.id,
        losing_ids=tuple(record.id for record in losing),
        field_updates={adoption.field: adoption.value for adoption in adoptions},
        adoptions=tuple(adoptions),
        reasons=reasons,
    )


def build_merge_plan(
    group: DuplicateGroup,
    records_by_id: Mapping[str, PersonRecord],
    *,
    placeholder_prefix: str = "LINE_",
) -> MergePlan:
    """Pick the canonical record of a strong group and compute its field updates.

    Pure function of the snapshot: no I/O, and the same input always yields
    a plan with the same JSON rendering.
    """
    if group.confidence is not Confidence.strong:
        raise MatchAmbiguity(group.person_ids)
    members = [records_by_id[person_id] for person_id in group.person_ids]
    canonical = choose_canonical(members, placeholder_prefix)
    losing = sorted(
        (record for record in members if record.id != canonical.id),
        key=lambda record: canonical_sort_key(record, placeholder_prefix),
    )
    return _plan_for(canonical, losing, group.reasons)


def build_pair_merge_plan(keep: PersonRecord, remove: PersonRecord) -> MergePlan:
    """Plan an operator-approved merge of ``remove`` into ``keep``.

    The operator's choice of survivor replaces the canonical precedence; the
    field rules are the same as for automatic groups.
    """
    if keep.id == remove.id:
        raise ValueError("Cannot merge a person into itself.")
    if keep.tenant_id != remove.tenant_id:
        raise ValueError(
            f"Cannot merge persons of different tenants: "
            f"{keep.id}={keep.tenant_id!r}, {remove.id}={remove.tenant_id!r}"
        )
    reason = MatchReason(
        kind=MatchKind.operator,
        value="approved",
        person_ids=tuple(sorted((keep.id, remove.id))),
    )
    plan = _plan_for(keep, [remove], (reason,))
    logger.info(
        "Operator merge plan computed",
        extra={
            "canonical_id": plan.canonical_id,
            "losing_ids": list(plan.losing_ids),
            "field_updates": sorted(plan.field_updates),
            "plan_fingerprint": plan.fingerprint,
        },
    )
    return plan


def build_merge_plans(
    groups: Iterable[DuplicateGroup],
    records: Iterable[PersonRecord],
    *,
    placeholder_prefix: str = "LINE_",
) -> list[MergePlan]:
    records_by_id = {record.id: record for record in records}
    plans: list[MergePlan] = []
    for group in groups:
        if group.confidence is not Confidence.strong:
            continue
        plan = build_merge_plan(group, records_by_id, placeholder_prefix=placeholder_prefix)
        logger.info(
            "Merge plan computed",
            extra={
                "canonical_id": plan.canonical_id,
                "losing_ids": list(plan.losing_ids),
                "field_updates": sorted(plan.field_updates),
                "plan_fingerprint": plan.fingerprint,
            },
        )
        plans.append(plan)
    return plans

from __future__ import annotations

import logging
from collections import defaultdict
from functools import partial
from itertools import combinations
from typing import Iterable

from patient_merge.services.identity.normalize import is_placeholder_id, normalize_name
from patient_merge.services.identity.types import (
    Confidence,
    DuplicateGroup,
    MatchKind,
    MatchReason,
    PersonRecord,
)

logger = logging.getLogger(__name__)

WEAK_KINDS = (MatchKind.name, MatchKind.name_birthday, MatchKind.name_kana_sex)
# Name+birthday is specific enough to pair two authoritative records.
_PLACEHOLDER_REQUIRED = frozenset({MatchKind.name, MatchKind.name_kana_sex})


class _DisjointSet:
    def __init__(self, items: Iterable[str]) -> None:
        self._parent = {item: item for item in items}

    def find(self, item: str) -> str:
        root = item
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[item] != root:
            self._parent[item], item = root, self._parent[item]
        return root

    def union(self, left: str, right: str) -> None:
        root_left = self.find(left)
        root_right = self.find(right)
        if root_left == root_right:
            return
        # Smaller id becomes the root so grouping never depends on input order.
        if root_right < root_left:
            root_left, root_right = root_right, root_left
        self._parent[root_right] = root_left

    def components(self) -> dict[str, list[str]]:
        grouped: dict[str, list[str]] = defaultdict(list)
        for item in self._parent:
            grouped[self.find(item)].append(item)
        return grouped


def is_placeholder(record: PersonRecord, placeholder_prefix: str) -> bool:
    """Placeholder: no authoritative id and no verified phone."""
    return is_placeholder_id(record.id, placeholder_prefix) and not record.phone


def has_conflicting_strong_signal(left: PersonRecord, right: PersonRecord) -> bool:
    if left.phone and right.phone and left.phone != right.phone:
        return True
    if (
        left.messaging_user_id
        and right.messaging_user_id
        and left.messaging_user_id != right.messaging_user_id
    ):
        return True
    return False


def _signal_value(record: PersonRecord, kind: MatchKind) -> str:
    if kind is MatchKind.messaging_id:
        return record.messaging_user_id or ""
    if kind is MatchKind.phone:
        return record.phone or ""
    if kind is MatchKind.name:
        return normalize_name(record.name)
    if kind is MatchKind.name_birthday:
        name = normalize_name(record.name)
        if not name or record.birthday is None:
            return ""
        return f"{name}|{record.birthday.isoformat()}"
    if kind is MatchKind.name_kana_sex:
        kana = normalize_name(record.name_kana)
        sex = (record.sex or "").strip().lower()
        if not kana or not sex:
            return ""
        return f"{kana}|{sex}"
    return ""


def _bucket(
    records: Iterable[PersonRecord], kind: MatchKind
) -> dict[tuple[str | None, str], list[str]]:
    buckets: dict[tuple[str | None, str], list[str]] = defaultdict(list)
    for record in records:
        value = _signal_value(record, kind)
        if value:
            buckets[(record.tenant_id, value)].append(record.id)
    return {key: sorted(ids) for key, ids in buckets.items() if len(ids) > 1}


def _link_bucket(
    disjoint: _DisjointSet,
    ids: list[str],
    ignored_pairs: set[tuple[str, str]],
    allow=None,
) -> list[tuple[str, str]]:
    linked: list[tuple[str, str]] = []
    for left, right in combinations(ids, 2):
        if (left, right) in ignored_pairs:
            continue
        if allow is not None and not allow(left, right):
            continue
        disjoint.union(left, right)
        linked.append((left, right))
    return linked


def _build_groups(
    disjoint: _DisjointSet,
    confidence: Confidence,
    reasons: list[MatchReason],
) -> list[DuplicateGroup]:
    groups: list[DuplicateGroup] = []
    for members in disjoint.components().values():
        if len(members) < 2:
            continue
        member_set = set(members)
        group_reasons = tuple(
            sorted(
                (reason for reason in reasons if reason.person_ids[0] in member_set),
                key=lambda reason: (reason.kind.value, reason.value, reason.person_ids),
            )
        )
        groups.append(
            DuplicateGroup(
                confidence=confidence,
                person_ids=tuple(sorted(members)),
                reasons=group_reasons,
            )
        )
    return groups


def find_duplicate_groups(
    records: Iterable[PersonRecord],
    *,
    placeholder_prefix: str = "LINE_",
    ignored_pairs: Iterable[tuple[str, str]] = (),
) -> list[DuplicateGroup]:
    """Group person records that look like the same real person.

    Strong groups come from a shared messaging id or normalized phone. Weak
    groups come from a shared name plus birthday. When one side is a
    placeholder record, a shared name alone or a shared kana reading plus
    sex also links weakly.
    Each group is the transitive closure of its pairwise links. Pairs listed
    in ``ignored_pairs`` never link. Records of different tenants never link.
    """
    by_id = {record.id: record for record in records}
    ignored = {tuple(sorted(pair)) for pair in ignored_pairs}

    strong = _DisjointSet(by_id)
    strong_reasons: list[MatchReason] = []
    for kind in (MatchKind.messaging_id, MatchKind.phone):
        for (_, value), ids in sorted(_bucket(by_id.values(), kind).items(), key=_bucket_sort_key):
            linked = _link_bucket(strong, ids, ignored)
            if linked:
                members = tuple(sorted({person_id for pair in linked for person_id in pair}))
                strong_reasons.append(MatchReason(kind=kind, value=value, person_ids=members))

    def _weak_allowed(kind: MatchKind, left: str, right: str) -> bool:
        left_record, right_record = by_id[left], by_id[right]
        if strong.find(left) == strong.find(right):
            return False
        if kind in _PLACEHOLDER_REQUIRED and not (
            is_placeholder(left_record, placeholder_prefix)
            or is_placeholder(right_record, placeholder_prefix)
        ):
            return False
        return not has_conflicting_strong_signal(left_record, right_record)

    weak = _DisjointSet(by_id)
    weak_reasons: list[MatchReason] = []
    for kind in WEAK_KINDS:
        allow = partial(_weak_allowed, kind)
        for (_, value), ids in sorted(_bucket(by_id.values(), kind).items(), key=_bucket_sort_key):
            linked = _link_bucket(weak, ids, ignored, allow=allow)
            if linked:
                members = tuple(sorted({person_id for pair in linked for person_id in pair}))
                weak_reasons.append(MatchReason(kind=kind, value=value, person_ids=members))

    strong_groups = _build_groups(strong, Confidence.strong, strong_reasons)
    weak_groups = _build_groups(weak, Confidence.weak, weak_reasons)
    strong_groups.sort(key=lambda group: group.person_ids)
    weak_groups.sort(key=lambda group: group.person_ids)
    logger.info(
        "Duplicate candidates grouped",
        extra={
            "records": len(by_id),
            "strong_groups": len(strong_groups),
            "weak_groups": len(weak_groups),
        },
    )
    return strong_groups + weak_groups


def _bucket_sort_key(item: tuple[tuple[str | None, str], list[str]]) -> tuple[str, str]:
    (tenant_id, value), _ = item
    return (tenant_id or "", value)

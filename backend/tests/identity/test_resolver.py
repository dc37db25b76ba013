from datetime import date, datetime, timezone

import pytest

from patient_merge.services.identity.errors import MatchAmbiguity
from patient_merge.services.identity.matcher import find_duplicate_groups
from patient_merge.services.identity.resolver import (
    ADOPT_FILL_EMPTY,
    ADOPT_NEWER_VALUE,
    build_merge_plan,
    build_merge_plans,
    build_pair_merge_plan,
    choose_canonical,
)
from patient_merge.services.identity.types import (
    Confidence,
    DuplicateGroup,
    MatchKind,
    MergePlan,
    PersonRecord,
)


def _record(person_id, *, created=1, updated=None, **fields):
    return PersonRecord(
        id=person_id,
        created_at=datetime(2024, 1, created, tzinfo=timezone.utc),
        updated_at=datetime(2024, 1, updated or created, tzinfo=timezone.utc),
        **fields,
    )


def _plan(*records):
    groups = find_duplicate_groups(records)
    plans = build_merge_plans(groups, records)
    assert len(plans) == 1
    return plans[0]


def test_verified_record_beats_older_placeholder():
    person_a = _record("LINE_U1", created=1, messaging_user_id="U1")
    person_b = _record("P-0002", created=2, messaging_user_id="U1", phone="09011112222")
    plan = _plan(person_a, person_b)
    assert plan.canonical_id == "P-0002"
    assert plan.losing_ids == ("LINE_U1",)
    assert "phone" not in plan.field_updates


def test_placeholder_id_with_phone_beats_older_placeholder_without_one():
    plan = _plan(
        _record("LINE_U1", created=1, messaging_user_id="U1"),
        _record("LINE_U2", created=2, messaging_user_id="U1", phone="09011112222"),
    )
    assert plan.canonical_id == "LINE_U2"
    assert plan.losing_ids == ("LINE_U1",)


def test_earliest_created_wins_among_authoritative_records():
    plan = _plan(
        _record("P-0009", created=1, phone="09011112222"),
        _record("P-0001", created=3, phone="09011112222"),
    )
    assert plan.canonical_id == "P-0009"


def test_smallest_id_breaks_created_at_tie():
    records = [
        _record("P-0002", created=1),
        _record("P-0001", created=1),
    ]
    assert choose_canonical(records, "LINE_").id == "P-0001"


def test_empty_canonical_field_adopts_losing_value():
    plan = _plan(
        _record("P-0001", created=1, phone="09011112222"),
        _record("LINE_U1", created=2, phone="09011112222", name="Sato Hanako", birthday="1990/01/02"),
    )
    assert plan.field_updates["name"] == "Sato Hanako"
    assert plan.field_updates["birthday"] == date(1990, 1, 2)
    adoption = next(item for item in plan.adoptions if item.field == "name")
    assert adoption.source_id == "LINE_U1"
    assert adoption.reason == ADOPT_FILL_EMPTY


def test_differing_value_kept_unless_loser_strictly_newer():
    plan = _plan(
        _record("P-0001", created=1, updated=5, phone="09011112222", name="Sato"),
        _record("P-0002", created=2, updated=5, phone="09011112222", name="Sato Hanako"),
    )
    assert "name" not in plan.field_updates

    plan = _plan(
        _record("P-0001", created=1, updated=3, phone="09011112222", name="Sato"),
        _record("P-0002", created=2, updated=6, phone="09011112222", name="Sato Hanako"),
    )
    assert plan.field_updates["name"] == "Sato Hanako"
    assert plan.adoptions[0].reason == ADOPT_NEWER_VALUE


def test_latest_loser_wins_when_several_are_newer():
    plan = _plan(
        _record("P-0001", created=1, updated=2, phone="09011112222", sex="F"),
        _record("P-0002", created=2, updated=4, phone="09011112222", sex="M"),
        _record("P-0003", created=3, updated=8, phone="09011112222", sex="X"),
    )
    assert plan.field_updates["sex"] == "X"
    assert plan.losing_ids == ("P-0002", "P-0003")


def test_values_equal_after_normalization_are_not_conflicts():
    plan = _plan(
        _record("P-0001", created=1, updated=1, messaging_user_id="U1", name="山田 太郎"),
        _record("P-0002", created=2, updated=9, messaging_user_id="U1", name="山田　太郎"),
    )
    assert "name" not in plan.field_updates


def test_newer_messaging_user_id_replaces_the_canonical_one():
    records = [
        _record("P-0001", created=1, updated=1, phone="09011112222", messaging_user_id="U-old"),
        _record("P-0002", created=2, updated=5, phone="09011112222", messaging_user_id="U-new"),
    ]
    group = DuplicateGroup(confidence=Confidence.strong, person_ids=("P-0001", "P-0002"))
    plan = build_merge_plan(group, {record.id: record for record in records})
    assert plan.canonical_id == "P-0001"
    assert plan.field_updates == {"messaging_user_id": "U-new"}


def test_older_messaging_user_id_does_not_replace_the_canonical_one():
    records = [
        _record("P-0001", created=1, updated=5, phone="09011112222", messaging_user_id="U-new"),
        _record("P-0002", created=2, updated=3, phone="09011112222", messaging_user_id="U-old"),
    ]
    group = DuplicateGroup(confidence=Confidence.strong, person_ids=("P-0001", "P-0002"))
    plan = build_merge_plan(group, {record.id: record for record in records})
    assert plan.field_updates == {}


def test_additional_attributes_are_resolved_per_key():
    plan = _plan(
        _record(
            "P-0001",
            created=1,
            updated=1,
            phone="09011112222",
            additional={"allergy": "none"},
        ),
        _record(
            "LINE_U1",
            created=2,
            updated=4,
            phone="09011112222",
            additional={"allergy": "penicillin", "referral": "friend"},
        ),
    )
    assert plan.field_updates["extra.allergy"] == "penicillin"
    assert plan.field_updates["extra.referral"] == "friend"


def test_weak_group_is_refused():
    group = DuplicateGroup(confidence=Confidence.weak, person_ids=("LINE_U1", "P-0001"))
    records = {
        "LINE_U1": _record("LINE_U1", name="Ito"),
        "P-0001": _record("P-0001", name="Ito"),
    }
    with pytest.raises(MatchAmbiguity) as excinfo:
        build_merge_plan(group, records)
    assert excinfo.value.person_ids == ("LINE_U1", "P-0001")


def test_build_merge_plans_skips_weak_groups():
    records = [_record("LINE_U1", name="Ito"), _record("P-0001", name="Ito")]
    groups = find_duplicate_groups(records)
    assert [group.confidence for group in groups] == [Confidence.weak]
    assert build_merge_plans(groups, records) == []


def test_plan_rendering_is_byte_identical_across_runs():
    records = [
        _record("LINE_U1", created=1, updated=7, messaging_user_id="U1", birthday="19900102"),
        _record("P-0002", created=2, messaging_user_id="U1", phone="09011112222"),
        _record("P-0003", created=3, phone="090-1111-2222", additional={"memo": "vip"}),
    ]
    first = _plan(*records)
    second = _plan(*reversed(records))
    assert first.to_json() == second.to_json()
    assert first.fingerprint == second.fingerprint


def test_plan_round_trips_through_its_json_form():
    plan = _plan(
        _record("P-0001", created=1, phone="09011112222"),
        _record("LINE_U1", created=2, phone="09011112222", birthday="1990-01-02"),
    )
    restored = MergePlan.from_dict(plan.as_dict())
    assert restored.fingerprint == plan.fingerprint


def test_pair_plan_keeps_the_operator_choice():
    keep = _record("LINE_U5", created=3, name="Ito", sex="F")
    remove = _record("P-0001", created=1, updated=6, name="Ito Aya", phone="09011112222")
    plan = build_pair_merge_plan(keep, remove)
    assert plan.canonical_id == "LINE_U5"
    assert plan.losing_ids == ("P-0001",)
    assert plan.field_updates == {"name": "Ito Aya", "phone": "09011112222"}
    assert [reason.kind for reason in plan.reasons] == [MatchKind.operator]


def test_pair_plan_rejects_same_id_and_cross_tenant():
    with pytest.raises(ValueError):
        build_pair_merge_plan(_record("P-0001"), _record("P-0001"))
    with pytest.raises(ValueError, match="different tenants"):
        build_pair_merge_plan(
            _record("P-0001", tenant_id="clinic-a"),
            _record("P-0002", tenant_id="clinic-b"),
        )

from sqlalchemy import update

from patient_merge.models import Order, Reservation
from patient_merge.services.identity.executor import MergeExecutor
from patient_merge.services.identity.matcher import find_duplicate_groups
from patient_merge.services.identity.resolver import build_merge_plans
from patient_merge.services.identity.store import PatientStore
from patient_merge.services.identity.verify import verify_merge_run


def _run(session):
    store = PatientStore(session, page_size=2)
    records = store.load_person_records()
    plans = build_merge_plans(find_duplicate_groups(records), records)
    return store, MergeExecutor(session, dry_run=False).run(plans)


def test_clean_run_verifies_ok(session, add_patient, add_row):
    add_patient("LINE_U1", created_day=1, messaging_user_id="U1")
    add_patient("P-0002", created_day=2, messaging_user_id="U1")
    add_patient("P-0003", created_day=3, phone="09012345678")
    add_row(Reservation, "LINE_U1")

    store, run = _run(session)
    report = verify_merge_run(store, losing_ids=run.losing_ids)

    assert report.ok
    assert report.persons_scanned == 2
    assert report.surviving_groups == []
    assert report.pending_losing_ids == []
    assert set(report.orphaned_references) >= {"reservations", "orders", "patient_tags"}
    assert sum(report.orphaned_references.values()) == 0


def test_surviving_group_and_orphans_are_reported(session, add_patient, add_row):
    add_patient("LINE_U1", created_day=1, messaging_user_id="U1")
    add_patient("P-0002", created_day=2, messaging_user_id="U1")
    store, run = _run(session)
    assert run.losing_ids == ["LINE_U1"]

    # Rows written behind the merge's back after it ran.
    add_patient("P-0100", created_day=5, phone="09055556666")
    add_patient("P-0101", created_day=6, phone="090-5555-6666")
    add_row(Order, "P-0002")
    session.execute(update(Order).values(patient_id="LINE_U1"))
    session.commit()

    report = verify_merge_run(store, losing_ids=run.losing_ids)

    assert not report.ok
    assert [group.person_ids for group in report.surviving_groups] == [("P-0100", "P-0101")]
    assert report.orphaned_references["orders"] == 1
    assert report.as_dict()["ok"] is False


def test_losing_ids_still_present_are_pending_not_orphans(session, add_patient, add_row):
    add_patient("P-0001", created_day=1)
    add_row(Reservation, "P-0001")
    store = PatientStore(session)

    report = verify_merge_run(store, losing_ids=["P-0001"])

    assert report.pending_losing_ids == ["P-0001"]
    assert report.orphaned_references["reservations"] == 0
    assert report.ok


def test_groups_left_out_of_the_run_are_deferred_not_defects(session, add_patient):
    add_patient("P-0001", created_day=1, phone="09011111111")
    add_patient("P-0002", created_day=2, phone="09011111111")
    add_patient("P-0003", created_day=1, phone="09022222222")
    add_patient("P-0004", created_day=2, phone="09022222222")
    store = PatientStore(session)
    records = store.load_person_records()
    first, second = build_merge_plans(find_duplicate_groups(records), records)
    run = MergeExecutor(session, dry_run=False).run([first])

    report = verify_merge_run(
        store,
        losing_ids=run.losing_ids,
        deferred_ids=[second.canonical_id, *second.losing_ids],
    )

    assert report.ok
    assert report.surviving_groups == []
    assert [group.person_ids for group in report.deferred_groups] == [("P-0003", "P-0004")]
    assert report.as_dict()["deferred_groups"][0]["person_ids"] == ["P-0003", "P-0004"]

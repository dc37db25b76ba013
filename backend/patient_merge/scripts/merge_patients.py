from __future__ import annotations

import argparse
import hashlib
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from patient_merge.core.settings import load_settings
from patient_merge.db.session import build_session_factory
from patient_merge.services.identity.audit import (
    build_report_payload,
    render_execute_summary,
    render_text_report,
)
from patient_merge.services.identity.errors import DataStoreUnavailable
from patient_merge.services.identity.executor import ExecutionProgress, MergeExecutor
from patient_merge.services.identity.matcher import find_duplicate_groups
from patient_merge.services.identity.resolver import build_merge_plans, build_pair_merge_plan
from patient_merge.services.identity.store import PatientStore
from patient_merge.services.identity.types import (
    Confidence,
    DuplicateGroup,
    MergePlan,
    PersonRecord,
)
from patient_merge.services.identity.verify import verify_merge_run

logger = logging.getLogger(__name__)


def _write_report_file(path: str, payload: dict[str, object]) -> None:
    target = Path(path)
    parent = target.parent
    if parent and not parent.exists():
        raise RuntimeError(f"Report output directory does not exist: {parent}")
    data = json.dumps(payload, indent=2, sort_keys=True, default=str)
    with tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        delete=False,
        dir=str(parent) if parent else None,
    ) as handle:
        handle.write(data)
        handle.write("\n")
        tmp_path = handle.name
    os.replace(tmp_path, target)


def _plans_fingerprint(plans: list[MergePlan]) -> str:
    material = ",".join(plan.fingerprint for plan in plans)
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def _build_run_signature(*, tenant_id: str | None, plans: list[MergePlan]) -> dict[str, object]:
    return {
        "tenant_id": tenant_id,
        "plans_count": len(plans),
        "plans_hash": _plans_fingerprint(plans),
    }


def _load_state_file(path: str) -> dict[str, object]:
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise RuntimeError(f"Unable to read --state-file: {path}") from exc
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Invalid JSON in --state-file: {path}") from exc
    if not isinstance(payload, dict):
        raise RuntimeError(f"Invalid --state-file payload: {path}")
    return payload


def _write_state_file(
    path: str,
    *,
    signature: dict[str, object],
    plans: list[MergePlan],
    deferred_plans: list[MergePlan],
    progress: ExecutionProgress,
    created_at: str,
) -> None:
    _write_report_file(
        path,
        {
            **signature,
            "created_at": created_at,
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "plans": [plan.as_dict() for plan in plans],
            "deferred_plans": [plan.as_dict() for plan in deferred_plans],
            "progress": progress.as_dict(),
        },
    )


def _validate_resume_state(
    payload: dict[str, object],
    *,
    tenant_id: str | None,
) -> tuple[list[MergePlan], list[MergePlan], ExecutionProgress, str]:
    """Rebuild the stored plans and progress marker from a state file.

    The stored plans are executed as-is: a fresh snapshot taken after a
    partial run no longer contains the already-deleted losing persons, so
    recomputing would give different plans.
    """
    if payload.get("tenant_id") != tenant_id:
        raise RuntimeError(
            f"--resume state mismatch for tenant_id: "
            f"state={payload.get('tenant_id')!r}, current={tenant_id!r}"
        )
    raw_plans = payload.get("plans")
    raw_deferred = payload.get("deferred_plans", [])
    if not isinstance(raw_plans, list) or not isinstance(raw_deferred, list):
        raise RuntimeError("Invalid plans in --state-file.")
    try:
        plans = [MergePlan.from_dict(item) for item in raw_plans]
        deferred_plans = [MergePlan.from_dict(item) for item in raw_deferred]
    except ValueError as exc:
        raise RuntimeError(f"Invalid plans in --state-file: {exc}") from exc
    signature = _build_run_signature(tenant_id=tenant_id, plans=plans)
    for key in ("plans_count", "plans_hash"):
        if payload.get(key) != signature[key]:
            raise RuntimeError(
                f"--resume state mismatch for {key}: "
                f"state={payload.get(key)!r}, current={signature[key]!r}"
            )
    progress_payload = payload.get("progress")
    if not isinstance(progress_payload, dict):
        raise RuntimeError("Invalid progress in --state-file.")
    progress = ExecutionProgress.from_dict(progress_payload)
    created_at = str(payload.get("created_at") or datetime.now(timezone.utc).isoformat())
    return plans, deferred_plans, progress, created_at


def _print_checkpoint(progress: ExecutionProgress, plans_total: int) -> None:
    payload = {
        "event": "patient_merge_checkpoint",
        "plans_completed": len(progress.completed_plans),
        "plans_total": plans_total,
        "last_plan": progress.completed_plans[-1] if progress.completed_plans else None,
    }
    print(json.dumps(payload, sort_keys=True))


def compute_plans(
    store: PatientStore,
    *,
    tenant_id: str | None,
    placeholder_prefix: str,
    max_groups: int | None,
) -> tuple[list[MergePlan], list[MergePlan], list[DuplicateGroup]]:
    """Return the plans to run, the plans deferred by ``max_groups`` and all groups."""
    records = store.load_person_records(tenant_id)
    groups = find_duplicate_groups(
        records,
        placeholder_prefix=placeholder_prefix,
        ignored_pairs=store.load_ignored_pairs(),
    )
    plans = build_merge_plans(groups, records, placeholder_prefix=placeholder_prefix)
    deferred: list[MergePlan] = []
    if max_groups is not None and len(plans) > max_groups:
        logger.info(
            "Merge plans truncated by --max-groups",
            extra={"plans_total": len(plans), "max_groups": max_groups},
        )
        plans, deferred = plans[:max_groups], plans[max_groups:]
    return plans, deferred, groups


def compute_pair_plan(
    store: PatientStore,
    keep_id: str,
    remove_id: str,
    *,
    tenant_id: str | None,
) -> MergePlan:
    """Plan an operator-approved merge; raise ``RuntimeError`` on a bad pair."""
    if keep_id == remove_id:
        raise RuntimeError("--merge needs two different patient ids.")
    records: dict[str, PersonRecord] = {}
    for person_id in (keep_id, remove_id):
        record = store.load_person_record(person_id)
        if record is None:
            raise RuntimeError(f"--merge patient not found: {person_id}")
        if tenant_id is not None and record.tenant_id != tenant_id:
            raise RuntimeError(f"--merge patient {person_id} is not in tenant {tenant_id!r}")
        records[person_id] = record
    try:
        return build_pair_merge_plan(records[keep_id], records[remove_id])
    except ValueError as exc:
        raise RuntimeError(f"--merge rejected: {exc}") from exc


def _deferred_person_ids(plans: list[MergePlan]) -> list[str]:
    person_ids: set[str] = set()
    for plan in plans:
        person_ids.add(plan.canonical_id)
        person_ids.update(plan.losing_ids)
    return sorted(person_ids)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Find duplicate patient records and merge them into one canonical record."
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report the merge plans without writing (default).",
    )
    parser.add_argument(
        "--execute",
        "--exec",
        dest="execute",
        action="store_true",
        help="Apply the merge plans to the database.",
    )
    parser.add_argument("--tenant", default=None, help="Only consider patients of this tenant.")
    parser.add_argument(
        "--page-size",
        type=int,
        default=None,
        help="Rows per page when scanning patients (default from MERGE_PAGE_SIZE).",
    )
    parser.add_argument(
        "--max-groups",
        type=int,
        default=None,
        help="Process at most this many duplicate groups.",
    )
    parser.add_argument(
        "--merge",
        nargs=2,
        metavar=("KEEP_ID", "REMOVE_ID"),
        default=None,
        help="Merge one reviewed pair: REMOVE_ID is folded into KEEP_ID.",
    )
    parser.add_argument("--report-out", default=None, help="Write the JSON audit report here.")
    parser.add_argument(
        "--state-file",
        default=None,
        help="Persist execution progress to this JSON file after every step.",
    )
    parser.add_argument(
        "--resume",
        action="store_true",
        help="Continue an interrupted execute run from --state-file.",
    )
    parser.add_argument(
        "--skip-verify",
        action="store_true",
        help="Do not re-scan for surviving duplicates after an execute run.",
    )
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    if args.dry_run and args.execute:
        print("Use either --dry-run or --execute, not both.")
        return 2
    if args.page_size is not None and args.page_size <= 0:
        print("--page-size must be a positive integer.")
        return 2
    if args.max_groups is not None and args.max_groups <= 0:
        print("--max-groups must be a positive integer.")
        return 2
    if args.merge and (args.max_groups is not None or args.resume):
        print("--merge cannot be combined with --max-groups or --resume.")
        return 2
    if args.resume and not args.state_file:
        print("--resume requires --state-file.")
        return 2
    if args.resume and not args.execute:
        print("--resume is only supported with --execute.")
        return 2
    if args.state_file and not args.execute:
        print("--state-file is only supported with --execute.")
        return 2

    try:
        settings = load_settings()
    except RuntimeError as exc:
        print(str(exc))
        return 2
    logging.basicConfig(level=settings.log_level.strip().upper())

    session_factory = build_session_factory(settings)
    session = session_factory()
    try:
        store = PatientStore(
            session,
            page_size=args.page_size or settings.merge_page_size,
            chunk_size=settings.reference_chunk_size,
        )
        groups: list[DuplicateGroup] = []
        deferred_plans: list[MergePlan] = []
        activity = None
        progress = ExecutionProgress()
        created_at = datetime.now(timezone.utc).isoformat()
        try:
            if args.resume:
                state_payload = _load_state_file(args.state_file)
                plans, deferred_plans, progress, created_at = _validate_resume_state(
                    state_payload, tenant_id=args.tenant
                )
            elif args.merge:
                keep_id, remove_id = args.merge
                plans = [compute_pair_plan(store, keep_id, remove_id, tenant_id=args.tenant)]
                # Every other strong group is left for a later run.
                deferred_plans, _, _ = compute_plans(
                    store,
                    tenant_id=args.tenant,
                    placeholder_prefix=settings.placeholder_id_prefix,
                    max_groups=None,
                )
            else:
                plans, deferred_plans, groups = compute_plans(
                    store,
                    tenant_id=args.tenant,
                    placeholder_prefix=settings.placeholder_id_prefix,
                    max_groups=args.max_groups,
                )
        except RuntimeError as exc:
            print(str(exc))
            return 2

        weak_ids = [
            person_id
            for group in groups
            if group.confidence is Confidence.weak
            for person_id in group.person_ids
        ]
        if weak_ids:
            activity = store.activity_counts(weak_ids)

        on_progress = None
        if args.execute:
            signature = _build_run_signature(tenant_id=args.tenant, plans=plans)

            def on_progress(current: ExecutionProgress) -> None:
                if args.state_file:
                    _write_state_file(
                        args.state_file,
                        signature=signature,
                        plans=plans,
                        deferred_plans=deferred_plans,
                        progress=current,
                        created_at=created_at,
                    )
                if current.current_plan is None:
                    _print_checkpoint(current, len(plans))

            if args.state_file and not args.resume:
                _write_state_file(
                    args.state_file,
                    signature=signature,
                    plans=plans,
                    deferred_plans=deferred_plans,
                    progress=progress,
                    created_at=created_at,
                )

        executor = MergeExecutor(
            session,
            dry_run=not args.execute,
            progress=progress,
            on_progress=on_progress,
        )
        run = executor.run(plans)

        verification = None
        if args.execute and not args.skip_verify:
            verification = verify_merge_run(
                store,
                losing_ids=run.losing_ids,
                deferred_ids=_deferred_person_ids(deferred_plans),
                placeholder_prefix=settings.placeholder_id_prefix,
                tenant_id=args.tenant,
            )

        if args.execute:
            print(render_execute_summary(run, verification, deferred_plans=deferred_plans))
        else:
            print(
                render_text_report(
                    run,
                    groups,
                    verification,
                    deferred_plans=deferred_plans,
                    activity=activity,
                )
            )

        if args.report_out:
            try:
                _write_report_file(
                    args.report_out,
                    build_report_payload(
                        run,
                        groups,
                        verification,
                        tenant_id=args.tenant,
                        deferred_plans=deferred_plans,
                        activity=activity,
                    ),
                )
            except RuntimeError as exc:
                print(str(exc))
                return 2
        return 0
    except DataStoreUnavailable as exc:
        logger.error("Merge run aborted", extra={"error": str(exc)})
        print(f"Fatal: {exc}")
        return 1
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


if __name__ == "__main__":
    raise SystemExit(main())

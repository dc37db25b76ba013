from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Mapping

from patient_merge.services.identity.executor import (
    STATUS_FAILED,
    STATUS_SKIPPED,
    EffectKind,
    MergeRunResult,
    PlanResult,
)
from patient_merge.services.identity.types import (
    Confidence,
    DuplicateGroup,
    MergePlan,
    jsonable,
)
from patient_merge.services.identity.verify import VerificationReport


def _format_reasons(reasons) -> str:
    return ", ".join(f"{reason.kind.value}={reason.value}" for reason in reasons) or "-"


def _format_plan(index: int, total: int, result: PlanResult) -> list[str]:
    plan = result.plan
    lines = [
        f"Plan {index}/{total} [{result.status}] canonical={plan.canonical_id} "
        f"losing={','.join(plan.losing_ids)}",
        f"  matched on: {_format_reasons(plan.reasons)}",
    ]
    for adoption in plan.adoptions:
        lines.append(
            f"  field {adoption.field} <- {jsonable(adoption.value)!r} "
            f"(from {adoption.source_id}, {adoption.reason})"
        )
    for effect in result.effects:
        if effect.status == STATUS_SKIPPED and effect.note == "no rows":
            continue
        kind = effect.effect.kind
        if kind is EffectKind.update_canonical:
            detail = f"update {','.join(effect.fields)}" if effect.fields else "update"
        elif kind is EffectKind.migrate:
            detail = f"[{effect.effect.table}] migrate {effect.migrated}"
            if effect.deleted_as_duplicate:
                detail += f", delete-as-duplicate {effect.deleted_as_duplicate}"
        else:
            detail = "[patients] delete"
        line = f"  {effect.effect.person_id}: {detail} ({effect.status})"
        if effect.note and effect.status in {STATUS_SKIPPED, STATUS_FAILED}:
            line += f" - {effect.note}"
        lines.append(line)
    if result.failure:
        lines.append(f"  ERROR: {result.failure}")
    return lines


def _format_verification(verification: VerificationReport) -> str:
    status = "OK" if verification.ok else "DEFECTS FOUND"
    return (
        f"Verification: {status} surviving-groups={len(verification.surviving_groups)} "
        f"deferred-groups={len(verification.deferred_groups)} "
        f"orphaned-references={sum(verification.orphaned_references.values())} "
        f"pending-losing-ids={len(verification.pending_losing_ids)}"
    )


def _format_activity(counts: Mapping[str, int]) -> str:
    return " ".join(f"{name}={count}" for name, count in counts.items()) or "-"


def render_text_report(
    run: MergeRunResult,
    weak_groups: Iterable[DuplicateGroup],
    verification: VerificationReport | None = None,
    *,
    deferred_plans: Iterable[MergePlan] = (),
    activity: Mapping[str, Mapping[str, int]] | None = None,
) -> str:
    deferred = list(deferred_plans)
    weak = [group for group in weak_groups if group.confidence is Confidence.weak]
    mode = "dry-run" if run.dry_run else "execute"
    lines = [
        f"Patient merge ({mode})",
        f"Strong groups: {len(run.plan_results)}  Weak groups (manual review): {len(weak)}",
    ]
    total = len(run.plan_results)
    for index, result in enumerate(run.plan_results, start=1):
        lines.extend(_format_plan(index, total, result))
    for group in weak:
        lines.append(
            f"Weak group (not merged): {','.join(group.person_ids)} "
            f"matched on: {_format_reasons(group.reasons)}"
        )
        if activity:
            for person_id in group.person_ids:
                lines.append(f"  {person_id}: {_format_activity(activity.get(person_id, {}))}")
    if deferred:
        lines.append(f"Deferred groups (not attempted this run): {len(deferred)}")
        for plan in deferred:
            lines.append(
                f"  deferred canonical={plan.canonical_id} losing={','.join(plan.losing_ids)}"
            )
    stats = run.stats
    lines.append(
        f"Totals: migrated={stats.migrated} deleted-as-duplicate={stats.deleted_as_duplicate} "
        f"errors={stats.errors} persons-deleted={stats.persons_deleted}"
    )
    if verification is not None:
        lines.append(_format_verification(verification))
        for group in verification.surviving_groups:
            lines.append(f"  surviving group: {','.join(group.person_ids)}")
        for group in verification.deferred_groups:
            lines.append(f"  deferred group: {','.join(group.person_ids)}")
        for table, count in verification.orphaned_references.items():
            if count:
                lines.append(f"  orphaned rows in {table}: {count}")
    if run.dry_run:
        lines.append("Dry run only. Use --execute to apply changes.")
    return "\n".join(lines)


def render_execute_summary(
    run: MergeRunResult,
    verification: VerificationReport | None = None,
    *,
    deferred_plans: Iterable[MergePlan] = (),
) -> str:
    deferred = list(deferred_plans)
    stats = run.stats
    lines = [
        "Patient merge (execute)",
        f"plans={stats.plans_total} completed={stats.plans_completed} "
        f"noop={stats.plans_noop} failed={stats.plans_failed}",
        f"migrated={stats.migrated} deleted-as-duplicate={stats.deleted_as_duplicate} "
        f"errors={stats.errors}",
        f"persons-deleted={stats.persons_deleted} fields-updated={stats.fields_updated}",
    ]
    for result in run.plan_results:
        if result.failure:
            lines.append(f"  failed plan canonical={result.plan.canonical_id}: {result.failure}")
    if deferred:
        lines.append(f"deferred-groups={len(deferred)}")
    if verification is not None:
        lines.append(_format_verification(verification))
    return "\n".join(lines)


def build_report_payload(
    run: MergeRunResult,
    groups: Iterable[DuplicateGroup],
    verification: VerificationReport | None = None,
    *,
    tenant_id: str | None = None,
    deferred_plans: Iterable[MergePlan] = (),
    activity: Mapping[str, Mapping[str, int]] | None = None,
) -> dict[str, object]:
    group_list = list(groups)
    weak_groups = []
    for group in group_list:
        if group.confidence is not Confidence.weak:
            continue
        entry = group.as_dict()
        if activity is not None:
            entry["activity"] = {
                person_id: dict(activity.get(person_id, {})) for person_id in group.person_ids
            }
        weak_groups.append(entry)
    return {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "mode": "dry-run" if run.dry_run else "execute",
        "tenant_id": tenant_id,
        "stats": run.stats.as_dict(),
        "plans": [result.as_dict() for result in run.plan_results],
        "weak_groups": weak_groups,
        "deferred_plans": [plan.as_dict() for plan in deferred_plans],
        "verification": verification.as_dict() if verification else None,
    }

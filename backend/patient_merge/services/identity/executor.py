from __future__ import annotations

import enum
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Iterable

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from patient_merge.models import Patient, PatientMergeEvent
from patient_merge.services.identity.errors import (
    ConstraintViolation,
    DataStoreUnavailable,
    PartialMigrationFailure,
)
from patient_merge.services.identity.normalize import normalize_birthday, normalize_phone
from patient_merge.services.identity.store import is_connectivity_error
from patient_merge.services.identity.tables import DEPENDENT_TABLES, DependentTable
from patient_merge.services.identity.types import EXTRA_PREFIX, MergePlan

logger = logging.getLogger(__name__)

STATUS_APPLIED = "applied"
STATUS_PLANNED = "planned"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"

PLAN_COMPLETED = "completed"
PLAN_PLANNED = "planned"
PLAN_NOOP = "noop"
PLAN_ALREADY_DONE = "already_done"
PLAN_FAILED = "failed"


class EffectKind(str, enum.Enum):
    update_canonical = "update_canonical"
    migrate = "migrate"
    delete_person = "delete_person"


@dataclass(frozen=True)
class PlannedEffect:
    kind: EffectKind
    person_id: str
    table: str | None = None

    def label(self) -> str:
        if self.table:
            return f"{self.kind.value}:{self.table}:{self.person_id}"
        return f"{self.kind.value}:{self.person_id}"


def plan_effects(
    plan: MergePlan, tables: Iterable[DependentTable] = DEPENDENT_TABLES
) -> list[PlannedEffect]:
    """Expand a plan into its ordered list of idempotent effects."""
    table_list = list(tables)
    effects = [PlannedEffect(EffectKind.update_canonical, plan.canonical_id)]
    for losing_id in plan.losing_ids:
        for table in table_list:
            effects.append(PlannedEffect(EffectKind.migrate, losing_id, table.name))
        effects.append(PlannedEffect(EffectKind.delete_person, losing_id))
    return effects


@dataclass
class EffectResult:
    effect: PlannedEffect
    status: str
    migrated: int = 0
    deleted_as_duplicate: int = 0
    fields: list[str] = field(default_factory=list)
    note: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "kind": self.effect.kind.value,
            "person_id": self.effect.person_id,
            "table": self.effect.table,
            "status": self.status,
            "migrated": self.migrated,
            "deleted_as_duplicate": self.deleted_as_duplicate,
            "fields": list(self.fields),
            "note": self.note,
        }


@dataclass
class PlanResult:
    plan: MergePlan
    status: str = PLAN_PLANNED
    effects: list[EffectResult] = field(default_factory=list)
    constraint_violations: list[ConstraintViolation] = field(default_factory=list)
    failure: PartialMigrationFailure | None = None

    @property
    def migrated(self) -> int:
        return sum(result.migrated for result in self.effects)

    @property
    def deleted_as_duplicate(self) -> int:
        return sum(result.deleted_as_duplicate for result in self.effects)

    @property
    def persons_deleted(self) -> int:
        return sum(
            1
            for result in self.effects
            if result.effect.kind is EffectKind.delete_person
            and result.status in {STATUS_APPLIED, STATUS_PLANNED}
        )

    def as_dict(self) -> dict[str, object]:
        return {
            "plan": self.plan.as_dict(),
            "plan_fingerprint": self.plan.fingerprint,
            "status": self.status,
            "migrated": self.migrated,
            "deleted_as_duplicate": self.deleted_as_duplicate,
            "persons_deleted": self.persons_deleted,
            "effects": [result.as_dict() for result in self.effects],
            "constraint_violations": [cv.as_dict() for cv in self.constraint_violations],
            "error": str(self.failure) if self.failure else None,
        }


@dataclass
class MergeRunStats:
    plans_total: int = 0
    plans_completed: int = 0
    plans_noop: int = 0
    plans_failed: int = 0
    migrated: int = 0
    deleted_as_duplicate: int = 0
    persons_deleted: int = 0
    fields_updated: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass
class MergeRunResult:
    dry_run: bool
    stats: MergeRunStats
    plan_results: list[PlanResult]

    @property
    def losing_ids(self) -> list[str]:
        return sorted({losing for result in self.plan_results for losing in result.plan.losing_ids})


@dataclass
class ExecutionProgress:
    """Resumable marker: finished plans plus the effect index reached in the current one."""

    completed_plans: list[str] = field(default_factory=list)
    current_plan: str | None = None
    completed_effects: int = 0

    def start_index(self, fingerprint: str) -> int:
        if self.current_plan == fingerprint:
            return self.completed_effects
        return 0

    def is_completed(self, fingerprint: str) -> bool:
        return fingerprint in self.completed_plans

    def mark_effect(self, fingerprint: str, completed_effects: int) -> None:
        self.current_plan = fingerprint
        self.completed_effects = completed_effects

    def mark_plan(self, fingerprint: str) -> None:
        if fingerprint not in self.completed_plans:
            self.completed_plans.append(fingerprint)
        self.current_plan = None
        self.completed_effects = 0

    def as_dict(self) -> dict[str, object]:
        return {
            "completed_plans": list(self.completed_plans),
            "current_plan": self.current_plan,
            "completed_effects": self.completed_effects,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ExecutionProgress":
        completed = payload.get("completed_plans") or []
        effects = payload.get("completed_effects", 0)
        if not isinstance(completed, list) or not isinstance(effects, int) or effects < 0:
            raise RuntimeError("Invalid progress payload in state file.")
        return cls(
            completed_plans=[str(item) for item in completed],
            current_plan=payload.get("current_plan"),
            completed_effects=effects,
        )


def _coerce_field(field_name: str, value: Any) -> Any:
    if field_name == "phone":
        return normalize_phone(value) or None
    if field_name == "birthday":
        return normalize_birthday(value)
    return value


class MergeExecutor:
    """Apply merge plans one effect at a time.

    Dry-run (the default) only reads and reports what would change. Execute
    mode commits after every effect, so an interrupted run leaves each table
    either fully migrated for a losing id or untouched, and the losing person
    row is deleted only once all of its tables are done.
    """

    def __init__(
        self,
        session: Session,
        *,
        tables: Iterable[DependentTable] = DEPENDENT_TABLES,
        dry_run: bool = True,
        progress: ExecutionProgress | None = None,
        on_progress: Callable[[ExecutionProgress], None] | None = None,
    ) -> None:
        self.session = session
        self.tables = list(tables)
        self._tables_by_name = {table.name: table for table in self.tables}
        self.dry_run = dry_run
        self.progress = progress or ExecutionProgress()
        self.on_progress = on_progress

    def run(self, plans: Iterable[MergePlan]) -> MergeRunResult:
        stats = MergeRunStats()
        results: list[PlanResult] = []
        for plan in plans:
            result = self.execute_plan(plan)
            results.append(result)
            stats.plans_total += 1
            stats.migrated += result.migrated
            stats.deleted_as_duplicate += result.deleted_as_duplicate
            stats.persons_deleted += result.persons_deleted
            stats.fields_updated += sum(
                len(effect.fields)
                for effect in result.effects
                if effect.status in {STATUS_APPLIED, STATUS_PLANNED}
            )
            if result.status == PLAN_FAILED:
                stats.plans_failed += 1
                stats.errors += 1
            elif result.status in {PLAN_NOOP, PLAN_ALREADY_DONE}:
                stats.plans_noop += 1
            else:
                stats.plans_completed += 1
        return MergeRunResult(dry_run=self.dry_run, stats=stats, plan_results=results)

    def execute_plan(self, plan: MergePlan) -> PlanResult:
        fingerprint = plan.fingerprint
        result = PlanResult(plan=plan)
        if not self.dry_run and self.progress.is_completed(fingerprint):
            result.status = PLAN_ALREADY_DONE
            return result

        effects = plan_effects(plan, self.tables)
        start = 0 if self.dry_run else self.progress.start_index(fingerprint)
        projected_keys: dict[str, set[tuple]] = {}
        exists: dict[str, bool] = {}

        try:
            if not self._person_exists(plan.canonical_id, exists):
                result.status = PLAN_FAILED
                result.failure = PartialMigrationFailure(
                    action="load_canonical",
                    table=None,
                    person_id=plan.canonical_id,
                    cause=LookupError("canonical person not found"),
                )
                self._log_failure(plan, result.failure)
                return result

            losers_present = any(
                self._person_exists(person_id, exists) for person_id in plan.losing_ids
            )
            for index, effect in enumerate(effects):
                if index < start:
                    result.effects.append(EffectResult(effect, STATUS_SKIPPED, note="resumed"))
                    continue
                if effect.kind is EffectKind.update_canonical:
                    already_merged = not losers_present
                else:
                    already_merged = not self._person_exists(effect.person_id, exists)
                if already_merged:
                    outcome = EffectResult(effect, STATUS_SKIPPED, note="losing person already merged")
                else:
                    outcome = self._apply_effect(plan, effect, projected_keys, result)
                result.effects.append(outcome)
                if outcome.status in {STATUS_APPLIED, STATUS_PLANNED}:
                    logger.info(
                        "Merge effect %s",
                        outcome.status,
                        extra={
                            "plan_fingerprint": fingerprint,
                            "effect": effect.label(),
                            "migrated": outcome.migrated,
                            "deleted_as_duplicate": outcome.deleted_as_duplicate,
                            "fields": outcome.fields,
                        },
                    )
                if not self.dry_run:
                    self.progress.mark_effect(fingerprint, index + 1)
                    self._notify()
        except SQLAlchemyError as exc:
            self.session.rollback()
            if is_connectivity_error(exc):
                raise DataStoreUnavailable(f"Data store unreachable: {exc}") from exc
            failed_effect = effects[len(result.effects)]
            result.failure = PartialMigrationFailure(
                action=failed_effect.kind.value,
                table=failed_effect.table,
                person_id=failed_effect.person_id,
                cause=exc,
            )
            result.effects.append(EffectResult(failed_effect, STATUS_FAILED, note=str(exc)))
            result.status = PLAN_FAILED
            self._log_failure(plan, result.failure)
            return result

        if self.dry_run:
            touched = any(effect.status == STATUS_PLANNED for effect in result.effects)
            result.status = PLAN_PLANNED if touched else PLAN_NOOP
        else:
            touched = any(effect.status == STATUS_APPLIED for effect in result.effects)
            result.status = PLAN_COMPLETED if touched else PLAN_NOOP
            self.progress.mark_plan(fingerprint)
            self._notify()

        logger.info(
            "Merge plan processed",
            extra={
                "plan_fingerprint": fingerprint,
                "canonical_id": plan.canonical_id,
                "losing_ids": list(plan.losing_ids),
                "dry_run": self.dry_run,
                "plan_status": result.status,
                "migrated": result.migrated,
                "deleted_as_duplicate": result.deleted_as_duplicate,
            },
        )
        return result

    def _apply_effect(
        self,
        plan: MergePlan,
        effect: PlannedEffect,
        projected_keys: dict[str, set[tuple]],
        result: PlanResult,
    ) -> EffectResult:
        if effect.kind is EffectKind.update_canonical:
            return self._update_canonical(plan, effect)
        if effect.kind is EffectKind.migrate:
            table = self._tables_by_name[effect.table]
            return self._migrate(plan, effect, table, projected_keys, result)
        return self._delete_person(plan, effect)

    def _update_canonical(self, plan: MergePlan, effect: PlannedEffect) -> EffectResult:
        patient = self.session.scalar(select(Patient).where(Patient.id == plan.canonical_id))
        changes: dict[str, Any] = {}
        extra = dict(patient.extra or {})
        extra_changed = False
        for field_name, value in sorted(plan.field_updates.items()):
            if field_name.startswith(EXTRA_PREFIX):
                key = field_name[len(EXTRA_PREFIX):]
                if extra.get(key) != value:
                    extra[key] = value
                    extra_changed = True
                    changes[field_name] = value
                continue
            target = _coerce_field(field_name, value)
            if getattr(patient, field_name) != target:
                changes[field_name] = target

        if not changes:
            return EffectResult(effect, STATUS_SKIPPED, note="canonical already up to date")
        if self.dry_run:
            return EffectResult(effect, STATUS_PLANNED, fields=sorted(changes))

        for field_name, value in changes.items():
            if not field_name.startswith(EXTRA_PREFIX):
                setattr(patient, field_name, value)
        if extra_changed:
            patient.extra = extra
        self._record_event(plan, effect, row_count=1, notes=",".join(sorted(changes)))
        self.session.commit()
        return EffectResult(effect, STATUS_APPLIED, fields=sorted(changes))

    def _migrate(
        self,
        plan: MergePlan,
        effect: PlannedEffect,
        table: DependentTable,
        projected_keys: dict[str, set[tuple]],
        result: PlanResult,
    ) -> EffectResult:
        losing_id = effect.person_id
        duplicate_ids: list[int] = []
        if table.is_keyed:
            canonical_keys = table.keys_for(self.session, plan.canonical_id)
            if self.dry_run:
                canonical_keys |= projected_keys.setdefault(table.name, set())
            losing_rows = table.keyed_rows(self.session, losing_id)
            duplicate_ids = [row_id for row_id, key in losing_rows if key in canonical_keys]
            movable = len(losing_rows) - len(duplicate_ids)
            if self.dry_run:
                projected_keys[table.name].update(
                    key for _, key in losing_rows if key not in canonical_keys
                )
        else:
            movable = table.count_rows(self.session, losing_id) if self.dry_run else 0

        if self.dry_run:
            if not movable and not duplicate_ids:
                return EffectResult(effect, STATUS_SKIPPED, note="no rows")
            if duplicate_ids:
                result.constraint_violations.append(
                    ConstraintViolation(table.name, losing_id, plan.canonical_id, tuple(duplicate_ids))
                )
            return EffectResult(
                effect,
                STATUS_PLANNED,
                migrated=movable,
                deleted_as_duplicate=len(duplicate_ids),
            )

        deleted = table.delete_rows(self.session, duplicate_ids)
        migrated = table.repoint(self.session, losing_id, plan.canonical_id)
        if not migrated and not deleted:
            return EffectResult(effect, STATUS_SKIPPED, note="no rows")

        if deleted:
            violation = ConstraintViolation(
                table.name, losing_id, plan.canonical_id, tuple(duplicate_ids)
            )
            result.constraint_violations.append(violation)
            logger.warning(
                "ConstraintViolation: duplicate rows deleted instead of migrated",
                extra=violation.as_dict(),
            )
            self._record_event(
                plan,
                PlannedEffect(EffectKind.migrate, losing_id, table.name),
                row_count=deleted,
                action="delete_duplicate",
                notes=",".join(str(row_id) for row_id in duplicate_ids),
            )
        if migrated:
            self._record_event(plan, effect, row_count=migrated)
        self.session.commit()
        return EffectResult(
            effect,
            STATUS_APPLIED,
            migrated=migrated,
            deleted_as_duplicate=deleted,
        )

    def _delete_person(self, plan: MergePlan, effect: PlannedEffect) -> EffectResult:
        if self.dry_run:
            return EffectResult(effect, STATUS_PLANNED)
        deleted = self.session.execute(
            delete(Patient)
            .where(Patient.id == effect.person_id)
            .execution_options(synchronize_session=False)
        ).rowcount
        if not deleted:
            return EffectResult(effect, STATUS_SKIPPED, note="losing person already merged")
        self._record_event(plan, effect, row_count=int(deleted))
        self.session.commit()
        return EffectResult(effect, STATUS_APPLIED)

    def _person_exists(self, person_id: str, cache: dict[str, bool]) -> bool:
        if person_id not in cache:
            found = self.session.scalar(select(Patient.id).where(Patient.id == person_id))
            cache[person_id] = found is not None
        return cache[person_id]

    def _record_event(
        self,
        plan: MergePlan,
        effect: PlannedEffect,
        *,
        row_count: int,
        action: str | None = None,
        notes: str | None = None,
    ) -> None:
        self.session.add(
            PatientMergeEvent(
                plan_fingerprint=plan.fingerprint,
                action=action or effect.kind.value,
                table_name=effect.table,
                canonical_id=plan.canonical_id,
                losing_id=None if effect.kind is EffectKind.update_canonical else effect.person_id,
                row_count=row_count,
                notes=notes,
            )
        )

    def _log_failure(self, plan: MergePlan, failure: PartialMigrationFailure) -> None:
        logger.error(
            "PartialMigrationFailure: group left for the next run",
            extra={
                "plan_fingerprint": plan.fingerprint,
                "canonical_id": plan.canonical_id,
                "failed_action": failure.action,
                "failed_table": failure.table,
                "failed_person_id": failure.person_id,
                "error": str(failure.cause),
            },
        )

    def _notify(self) -> None:
        if self.on_progress is not None:
            self.on_progress(self.progress)

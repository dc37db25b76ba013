from __future__ import annotations

from dataclasses import dataclass


class IdentityMergeError(Exception):
    pass


class NormalizationFailure(IdentityMergeError, ValueError):
    pass


class MatchAmbiguity(IdentityMergeError):
    def __init__(self, person_ids: tuple[str, ...], message: str | None = None) -> None:
        self.person_ids = person_ids
        super().__init__(
            message or f"Weak-confidence group needs manual review: {', '.join(person_ids)}"
        )


class DataStoreUnavailable(IdentityMergeError):
    pass


class PartialMigrationFailure(IdentityMergeError):
    def __init__(self, *, action: str, table: str | None, person_id: str, cause: Exception) -> None:
        self.action = action
        self.table = table
        self.person_id = person_id
        self.cause = cause
        where = f"{action}:{table}" if table else action
        super().__init__(f"{where} failed for {person_id}: {cause}")


@dataclass(frozen=True)
class ConstraintViolation:
    """A losing row that duplicated an existing canonical row and was deleted instead of moved."""

    table: str
    losing_id: str
    canonical_id: str
    row_ids: tuple[int, ...]

    def as_dict(self) -> dict[str, object]:
        return {
            "table": self.table,
            "losing_id": self.losing_id,
            "canonical_id": self.canonical_id,
            "row_ids": list(self.row_ids),
        }

"""Pure allocation arithmetic: even splits, seeding and assignment diffs.

Everything here works on plain snapshots and never touches the database, so
the allocator and the API layer can both reuse it.

Remainder placement rule: when a quantity does not divide evenly, the extra
units go to the first users in selection order, one unit each. Callers that
need a different winner must reorder the user list before calling.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from uuid import UUID


@dataclass(frozen=True, slots=True)
class AssignmentRecord:
    """Persisted assignment as seen by the allocation engine."""

    id: UUID
    task_id: UUID
    user_id: UUID
    image_quantity: int
    completed_image_quantity: int = 0


@dataclass(frozen=True, slots=True)
class TaskSnapshot:
    """Task state needed to allocate work: resolved total plus assignments."""

    id: UUID
    total_quantity: int
    assignments: tuple[AssignmentRecord, ...] = ()

    def assignment_for(self, user_id: UUID) -> AssignmentRecord | None:
        for assignment in self.assignments:
            if assignment.user_id == user_id:
                return assignment
        return None

    @property
    def allocated_quantity(self) -> int:
        return sum(assignment.image_quantity for assignment in self.assignments)

    @property
    def completed_quantity(self) -> int:
        return sum(assignment.completed_image_quantity for assignment in self.assignments)


@dataclass(frozen=True, slots=True)
class SeededAllocation:
    """Allocation prefilled from persisted quantities plus an even remainder split."""

    allocations: dict[UUID, int]
    seeded_user_ids: tuple[UUID, ...]
    remaining: int


@dataclass(frozen=True, slots=True)
class QuantityChange:
    assignment: AssignmentRecord
    image_quantity: int


@dataclass(frozen=True, slots=True)
class NewAssignment:
    user_id: UUID
    image_quantity: int


@dataclass(frozen=True, slots=True)
class AssignmentDiff:
    """Operations needed to move persisted assignments to the desired set."""

    to_remove: tuple[AssignmentRecord, ...] = field(default_factory=tuple)
    to_update: tuple[QuantityChange, ...] = field(default_factory=tuple)
    to_add: tuple[NewAssignment, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not (self.to_remove or self.to_update or self.to_add)

    @property
    def operation_count(self) -> int:
        return len(self.to_remove) + len(self.to_update) + len(self.to_add)


def _unique(user_ids: Iterable[UUID]) -> list[UUID]:
    return list(dict.fromkeys(user_ids))


def distribute_evenly(total: int, user_ids: Sequence[UUID]) -> dict[UUID, int]:
    """Split ``total`` across ``user_ids`` so the parts sum exactly to ``total``.

    Each user gets ``total // k``; the first ``total % k`` users get one more.
    An empty user list yields an empty mapping.
    """

    if total < 0:
        raise ValueError(f"total must be non-negative, got {total}")

    ordered = _unique(user_ids)
    if not ordered:
        return {}

    base, remainder = divmod(total, len(ordered))
    return {user_id: base + (1 if index < remainder else 0) for index, user_id in enumerate(ordered)}


def seed_allocations(
    total: int,
    user_ids: Sequence[UUID],
    persisted: Iterable[AssignmentRecord],
) -> SeededAllocation:
    """Carry over persisted quantities and split what is left across new users."""

    if total < 0:
        raise ValueError(f"total must be non-negative, got {total}")

    existing = {assignment.user_id: assignment.image_quantity for assignment in persisted}
    ordered = _unique(user_ids)

    allocations: dict[UUID, int] = {}
    seeded: list[UUID] = []
    for user_id in ordered:
        if user_id in existing:
            allocations[user_id] = existing[user_id]
            seeded.append(user_id)

    remaining = max(total - sum(allocations.values()), 0)
    unseeded = [user_id for user_id in ordered if user_id not in allocations]
    allocations.update(distribute_evenly(remaining, unseeded))

    return SeededAllocation(
        allocations={user_id: allocations[user_id] for user_id in ordered},
        seeded_user_ids=tuple(seeded),
        remaining=remaining,
    )


def resolve_assignment_diff(
    persisted: Iterable[AssignmentRecord],
    desired: Mapping[UUID, int],
) -> AssignmentDiff:
    """Compute removals, quantity updates and additions.

    Removals keep persisted order; updates and additions keep desired order.
    """

    persisted_rows = list(persisted)
    persisted_by_user = {assignment.user_id: assignment for assignment in persisted_rows}

    to_remove = tuple(assignment for assignment in persisted_rows if assignment.user_id not in desired)
    to_update: list[QuantityChange] = []
    to_add: list[NewAssignment] = []
    for user_id, quantity in desired.items():
        current = persisted_by_user.get(user_id)
        if current is None:
            to_add.append(NewAssignment(user_id=user_id, image_quantity=quantity))
        elif current.image_quantity != quantity:
            to_update.append(QuantityChange(assignment=current, image_quantity=quantity))

    return AssignmentDiff(to_remove=to_remove, to_update=tuple(to_update), to_add=tuple(to_add))


def allocation_differs(persisted: Iterable[AssignmentRecord], desired: Mapping[UUID, int]) -> bool:
    """Whether the desired allocation changes users or any quantity."""

    return not resolve_assignment_diff(persisted, desired).is_empty

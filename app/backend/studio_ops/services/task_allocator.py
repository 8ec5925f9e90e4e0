"""Task assignment allocation: proposals, validation, diff commit and completion tracking."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Literal, Protocol
from uuid import UUID

from studio_ops.core.logging import get_logger
from studio_ops.models.entities import AssignmentStatus
from studio_ops.services.allocation import (
    AssignmentDiff,
    AssignmentRecord,
    TaskSnapshot,
    allocation_differs,
    distribute_evenly,
    resolve_assignment_diff,
    seed_allocations,
)
from studio_ops.services.event_bus import CacheEvent, CacheInvalidationBus

logger = get_logger(__name__)


class AllocationError(Exception):
    """Base class for allocation failures surfaced to callers."""


class TaskNotFoundError(AllocationError):
    def __init__(self, task_id: UUID) -> None:
        super().__init__(f"Task {task_id} not found.")
        self.task_id = task_id


class NotAssignedError(AllocationError):
    def __init__(self, task_id: UUID, user_id: UUID) -> None:
        super().__init__("You are not assigned to this task.")
        self.task_id = task_id
        self.user_id = user_id


class AllocationRejectedError(AllocationError):
    """Raised by ``commit`` when the validation gate refuses an allocation."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class MutationError(Exception):
    """Transport or storage failure reported by the mutation boundary."""


class AssignmentMutations(Protocol):
    """Boundary through which the allocator reads tasks and writes assignments."""

    async def get_task(self, task_id: UUID) -> TaskSnapshot | None: ...

    async def create_assignment(self, task_id: UUID, user_id: UUID, quantity: int) -> AssignmentRecord: ...

    async def update_assignment(self, assignment_id: UUID, fields: Mapping[str, Any]) -> AssignmentRecord: ...

    async def delete_assignment(self, assignment_id: UUID) -> None: ...


@dataclass(frozen=True, slots=True)
class AllocationCheck:
    is_valid: bool
    total_allocated: int
    has_changes: bool
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class AllocationProposal:
    task_id: UUID
    total: int
    user_ids: tuple[UUID, ...]
    allocations: dict[UUID, int]
    seeded_user_ids: tuple[UUID, ...]
    remaining: int
    check: AllocationCheck

    @property
    def is_valid(self) -> bool:
        return self.check.is_valid


@dataclass(frozen=True, slots=True)
class AppliedOperation:
    kind: Literal["remove", "update", "add"]
    user_id: UUID
    assignment_id: UUID
    image_quantity: int


@dataclass(frozen=True, slots=True)
class CommitResult:
    task_id: UUID
    operations: tuple[AppliedOperation, ...]
    assignments: tuple[AssignmentRecord, ...]


@dataclass(frozen=True, slots=True)
class CompletionCheck:
    allowed: bool
    increment: int
    own_completed: int
    others_completed: int
    max_increment: int
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class CompletionOutcome:
    check: CompletionCheck
    assignment: AssignmentRecord | None = None


def validate_allocation(task: TaskSnapshot, allocations: Mapping[UUID, int]) -> AllocationCheck:
    """Validation gate for multi-user allocations.

    A task without persisted assignments is always submittable when the other
    rules pass, even if the proposal equals the default split.
    """

    total_allocated = sum(allocations.values())
    has_changes = allocation_differs(task.assignments, allocations)

    if not allocations:
        return AllocationCheck(False, total_allocated, has_changes, "Select at least one user.")
    if any(quantity < 0 for quantity in allocations.values()):
        return AllocationCheck(False, total_allocated, has_changes, "Allocated quantities must be non-negative.")
    if total_allocated > task.total_quantity:
        return AllocationCheck(
            False,
            total_allocated,
            has_changes,
            f"Allocated {total_allocated} images exceeds task total of {task.total_quantity}.",
        )
    if task.assignments and not has_changes:
        return AllocationCheck(False, total_allocated, has_changes, "No changes to save.")
    return AllocationCheck(True, total_allocated, has_changes)


def check_completion_increment(task: TaskSnapshot, user_id: UUID, increment: int) -> CompletionCheck:
    """Check a completed-images increment against the task total.

    Decrements are always accepted and clamp at zero.
    """

    own = task.assignment_for(user_id)
    if own is None:
        raise NotAssignedError(task.id, user_id)

    own_completed = own.completed_image_quantity
    others_completed = task.completed_quantity - own_completed
    max_increment = max(task.total_quantity - own_completed - others_completed, 0)

    if increment == 0:
        return CompletionCheck(False, increment, own_completed, others_completed, max_increment, "Nothing to record.")
    if increment > 0 and own_completed + increment + others_completed > task.total_quantity:
        return CompletionCheck(
            False,
            increment,
            own_completed,
            others_completed,
            max_increment,
            (
                f"Cannot add {increment} images. You've completed {own_completed}, "
                f"others completed {others_completed}. You can add up to {max_increment} more images."
            ),
        )
    return CompletionCheck(True, increment, own_completed, others_completed, max_increment)


def derive_assignment_status(completed: int, allocated: int) -> AssignmentStatus:
    if completed <= 0:
        return AssignmentStatus.PENDING
    if completed >= allocated:
        return AssignmentStatus.COMPLETED
    return AssignmentStatus.IN_PROGRESS


def _ordered_unique(user_ids: Sequence[UUID]) -> tuple[UUID, ...]:
    return tuple(dict.fromkeys(user_ids))


class TaskAssignmentAllocator:
    """Allocate a task's images across users and persist the result.

    Diff operations are issued one at a time: removals, then updates, then
    additions. The store enforces uniqueness on ``(task_id, user_id)`` so a
    creation must never race a pending removal. A failure part-way through
    leaves earlier operations applied; callers re-read and build a fresh diff.
    """

    def __init__(self, mutations: AssignmentMutations, *, event_bus: CacheInvalidationBus | None = None) -> None:
        self.mutations = mutations
        self.event_bus = event_bus

    async def _load_task(self, task_id: UUID) -> TaskSnapshot:
        task = await self.mutations.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _publish(self, event: CacheEvent, payload: dict[str, object]) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event, payload)

    def propose_allocation(self, task: TaskSnapshot, desired_user_ids: Sequence[UUID]) -> AllocationProposal:
        user_ids = _ordered_unique(desired_user_ids)

        if len(user_ids) <= 1:
            allocations = {user_id: task.total_quantity for user_id in user_ids}
            seeded: tuple[UUID, ...] = ()
            remaining = task.total_quantity
        else:
            seed = seed_allocations(task.total_quantity, user_ids, task.assignments)
            allocations = seed.allocations
            seeded = seed.seeded_user_ids
            remaining = seed.remaining

        return AllocationProposal(
            task_id=task.id,
            total=task.total_quantity,
            user_ids=user_ids,
            allocations=allocations,
            seeded_user_ids=seeded,
            remaining=remaining,
            check=validate_allocation(task, allocations),
        )

    def auto_distribute(self, task: TaskSnapshot, user_ids: Sequence[UUID]) -> dict[UUID, int]:
        """Discard seeds and split the whole task total across ``user_ids``."""

        return distribute_evenly(task.total_quantity, _ordered_unique(user_ids))

    async def commit(self, task: TaskSnapshot, desired_allocations: Mapping[UUID, int]) -> CommitResult:
        """Apply the desired allocation and return the authoritative assignment list."""

        current = await self._load_task(task.id)
        desired = dict(desired_allocations)

        if len(desired) == 1:
            (user_id,) = desired
            desired = {user_id: current.total_quantity}
        elif len(desired) > 1:
            check = validate_allocation(current, desired)
            if not check.is_valid:
                raise AllocationRejectedError(check.reason or "Allocation rejected.")

        diff = resolve_assignment_diff(current.assignments, desired)
        operations = await self._apply(current.id, diff)

        refreshed = await self._load_task(current.id)
        return CommitResult(task_id=current.id, operations=tuple(operations), assignments=refreshed.assignments)

    async def _apply(self, task_id: UUID, diff: AssignmentDiff) -> list[AppliedOperation]:
        applied: list[AppliedOperation] = []
        if diff.is_empty:
            return applied

        try:
            for assignment in diff.to_remove:
                await self.mutations.delete_assignment(assignment.id)
                applied.append(
                    AppliedOperation("remove", assignment.user_id, assignment.id, assignment.image_quantity)
                )
            for change in diff.to_update:
                record = await self.mutations.update_assignment(
                    change.assignment.id,
                    {"image_quantity": change.image_quantity},
                )
                applied.append(AppliedOperation("update", record.user_id, record.id, record.image_quantity))
            for addition in diff.to_add:
                record = await self.mutations.create_assignment(task_id, addition.user_id, addition.image_quantity)
                applied.append(AppliedOperation("add", record.user_id, record.id, record.image_quantity))
        except Exception:
            logger.warning(
                "Assignment commit for task %s failed after %d of %d operations",
                task_id,
                len(applied),
                diff.operation_count,
                exc_info=True,
            )
            if applied:
                self._publish(CacheEvent.TASK_ASSIGNMENT_CHANGED, {"task_id": str(task_id), "partial": True})
            raise

        logger.info(
            "Committed assignments for task %s: %d removed, %d updated, %d added",
            task_id,
            len(diff.to_remove),
            len(diff.to_update),
            len(diff.to_add),
        )
        self._publish(CacheEvent.TASK_ASSIGNMENT_CHANGED, {"task_id": str(task_id)})
        return applied

    async def record_completion(self, task: TaskSnapshot, user_id: UUID, increment: int) -> CompletionOutcome:
        """Add ``increment`` completed images to ``user_id``'s assignment.

        The headroom check runs against freshly loaded state right before the
        update is issued.
        """

        current = await self._load_task(task.id)
        check = check_completion_increment(current, user_id, increment)
        if not check.allowed:
            logger.info("Rejected completion increment on task %s: %s", current.id, check.reason)
            return CompletionOutcome(check=check)

        own = current.assignment_for(user_id)
        if own is None:
            raise NotAssignedError(current.id, user_id)
        completed = max(own.completed_image_quantity + increment, 0)
        record = await self.mutations.update_assignment(
            own.id,
            {
                "completed_image_quantity": completed,
                "status": derive_assignment_status(completed, own.image_quantity),
            },
        )
        self._publish(CacheEvent.TASK_UPDATED, {"task_id": str(current.id), "user_id": str(user_id)})
        return CompletionOutcome(check=check, assignment=record)

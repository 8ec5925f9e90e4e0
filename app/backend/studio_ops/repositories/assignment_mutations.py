"""SQLAlchemy-backed mutation boundary for task assignments and project status.

Each operation commits on its own; there is no transaction spanning a whole
allocation diff. The session is synchronous, so every coroutine hands its
work to the threadpool and the event loop keeps serving other requests while
a statement is in flight.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from studio_ops.models.entities import AssignmentStatus, Project, ProjectStatus, Task, TaskAssignment
from studio_ops.repositories.studio_repository import StudioRepository
from studio_ops.services.allocation import AssignmentRecord, TaskSnapshot
from studio_ops.services.task_allocator import AllocationError, MutationError

UPDATABLE_ASSIGNMENT_FIELDS = frozenset({"image_quantity", "completed_image_quantity", "status", "notes"})


class AssignmentNotFoundError(AllocationError):
    def __init__(self, assignment_id: UUID) -> None:
        super().__init__(f"Task assignment {assignment_id} not found.")
        self.assignment_id = assignment_id


def resolve_task_total(task: Task) -> int:
    """Images due on a task: its own quantity, else its grading's, else the project's."""

    if task.image_quantity is not None:
        return task.image_quantity
    grading = task.project_grading
    if grading is not None and grading.image_quantity is not None:
        return grading.image_quantity
    if task.project is not None and task.project.image_quantity is not None:
        return task.project.image_quantity
    return 0


def to_assignment_record(assignment: TaskAssignment) -> AssignmentRecord:
    return AssignmentRecord(
        id=assignment.id,
        task_id=assignment.task_id,
        user_id=assignment.user_id,
        image_quantity=assignment.image_quantity,
        completed_image_quantity=assignment.completed_image_quantity,
    )


class SqlAssignmentMutations:
    def __init__(self, db: Session) -> None:
        self.db = db
        self.repo = StudioRepository(db)

    def snapshot(self, task: Task) -> TaskSnapshot:
        return TaskSnapshot(
            id=task.id,
            total_quantity=resolve_task_total(task),
            assignments=tuple(
                to_assignment_record(row) for row in self.repo.list_assignments_for_task(task.id)
            ),
        )

    async def get_task(self, task_id: UUID) -> TaskSnapshot | None:
        return await run_in_threadpool(self._get_task, task_id)

    async def create_assignment(self, task_id: UUID, user_id: UUID, quantity: int) -> AssignmentRecord:
        return await run_in_threadpool(self._create_assignment, task_id, user_id, quantity)

    async def update_assignment(self, assignment_id: UUID, fields: Mapping[str, Any]) -> AssignmentRecord:
        return await run_in_threadpool(self._update_assignment, assignment_id, dict(fields))

    async def delete_assignment(self, assignment_id: UUID) -> None:
        await run_in_threadpool(self._delete_assignment, assignment_id)

    async def update_project_status(self, project_id: UUID, status: ProjectStatus) -> Project:
        return await run_in_threadpool(self._update_project_status, project_id, status)

    def _get_task(self, task_id: UUID) -> TaskSnapshot | None:
        task = self.repo.get_task(task_id)
        if task is None:
            return None
        return self.snapshot(task)

    def _create_assignment(self, task_id: UUID, user_id: UUID, quantity: int) -> AssignmentRecord:
        now = datetime.utcnow()
        assignment = TaskAssignment(
            task_id=task_id,
            user_id=user_id,
            image_quantity=quantity,
            completed_image_quantity=0,
            status=AssignmentStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        try:
            self.repo.add_assignment(assignment)
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise MutationError("Task assignment already exists for this user.") from exc

        self.db.refresh(assignment)
        return to_assignment_record(assignment)

    def _update_assignment(self, assignment_id: UUID, fields: Mapping[str, Any]) -> AssignmentRecord:
        unknown = set(fields) - UPDATABLE_ASSIGNMENT_FIELDS
        if unknown:
            raise ValueError(f"Unsupported assignment fields: {', '.join(sorted(unknown))}")

        assignment = self.repo.get_assignment(assignment_id)
        if assignment is None:
            raise AssignmentNotFoundError(assignment_id)

        for name, value in fields.items():
            setattr(assignment, name, value)
        assignment.updated_at = datetime.utcnow()
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise MutationError("Task assignment update violates a constraint.") from exc

        self.db.refresh(assignment)
        return to_assignment_record(assignment)

    def _delete_assignment(self, assignment_id: UUID) -> None:
        assignment = self.repo.get_assignment(assignment_id)
        if assignment is None:
            raise AssignmentNotFoundError(assignment_id)
        self.repo.delete_assignment(assignment)
        self.db.commit()

    def _update_project_status(self, project_id: UUID, status: ProjectStatus) -> Project:
        project = self.repo.get_project(project_id)
        if project is None:
            raise MutationError(f"Project {project_id} not found.")
        project.status = ProjectStatus.parse(status)
        project.updated_at = datetime.utcnow()
        self.db.commit()
        self.db.refresh(project)
        return project

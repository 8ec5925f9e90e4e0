"""Application service for projects, status transitions and task allocation."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from fastapi import HTTPException, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from studio_ops.core.auth import Permission, RequestUserContext, has_permission
from studio_ops.core.config import get_settings
from studio_ops.core.logging import get_logger
from studio_ops.models.entities import (
    Client,
    ClientCategory,
    Invoice,
    Project,
    ProjectGrading,
    ProjectStatus,
    Task,
    TaskStatus,
)
from studio_ops.repositories.assignment_mutations import (
    AssignmentNotFoundError,
    SqlAssignmentMutations,
)
from studio_ops.repositories.studio_repository import StudioRepository
from studio_ops.services.allocation import AssignmentRecord, TaskSnapshot
from studio_ops.services.event_bus import CacheEvent, CacheInvalidationBus
from studio_ops.services.status_guard import (
    InvoiceState,
    ProjectState,
    ProjectStatusTransitionGuard,
    StatusOption,
    TransitionDecision,
)
from studio_ops.services.task_allocator import (
    AllocationProposal,
    AllocationRejectedError,
    CommitResult,
    CompletionOutcome,
    MutationError,
    NotAssignedError,
    TaskAssignmentAllocator,
    TaskNotFoundError,
)

logger = get_logger(__name__)


@dataclass(slots=True)
class ClientCreateData:
    code: str
    display_name: str
    category: ClientCategory


@dataclass(slots=True)
class ProjectCreateData:
    client_id: UUID
    code: str
    name: str
    image_quantity: int | None = None
    status: ProjectStatus = ProjectStatus.DRAFT


@dataclass(slots=True)
class GradingCreateData:
    name: str
    image_quantity: int | None = None
    sequence_no: int = 0


@dataclass(slots=True)
class InvoiceCreateData:
    invoice_no: str
    invoice_date: date
    amount: Decimal
    balance_amount: Decimal
    status: str = "unpaid"


@dataclass(slots=True)
class TaskCreateData:
    code: str
    name: str
    image_quantity: int | None = None
    project_grading_id: UUID | None = None
    due_date: date | None = None


@dataclass(slots=True)
class TaskUpdateData:
    status: TaskStatus | None = None
    due_date: date | None = None
    clear_due_date: bool = False


class StudioService:
    """Service wiring the allocation engine and status guard to persistence."""

    def __init__(self, db: Session, *, event_bus: CacheInvalidationBus | None = None) -> None:
        self.db = db
        self.repo = StudioRepository(db)
        self.settings = get_settings()
        self.event_bus = event_bus
        self.mutations = SqlAssignmentMutations(db)
        self.allocator = TaskAssignmentAllocator(self.mutations, event_bus=event_bus)
        self.guard = ProjectStatusTransitionGuard(has_permission, currency_symbol=self.settings.currency_symbol)

    def _publish(self, event: CacheEvent, payload: dict[str, object]) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event, payload)

    # ---------- Permissions ----------
    @staticmethod
    def ensure_permission(context: RequestUserContext, permission: Permission) -> None:
        if not has_permission(context, permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions for this operation.",
            )

    def _get_project_or_404(self, project_id: UUID) -> Project:
        project = self.repo.get_project(project_id)
        if project is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found.")
        return project

    def _get_task_or_404(self, task_id: UUID) -> Task:
        task = self.repo.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found.")
        return task

    def _ensure_users_exist(self, user_ids: Sequence[UUID]) -> None:
        found = {user.id for user in self.repo.list_users_by_ids(user_ids)}
        missing = [str(user_id) for user_id in user_ids if user_id not in found]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"User not found: {', '.join(missing)}.",
            )

    # ---------- Serialization ----------
    @staticmethod
    def serialize_client(client: Client) -> dict[str, object]:
        return {
            "id": str(client.id),
            "code": client.code,
            "display_name": client.display_name,
            "category": client.category.value,
        }

    @staticmethod
    def serialize_invoice(invoice: Invoice) -> dict[str, object]:
        return {
            "id": str(invoice.id),
            "invoice_no": invoice.invoice_no,
            "invoice_date": invoice.invoice_date.isoformat(),
            "amount": str(invoice.amount),
            "balance_amount": str(invoice.balance_amount),
            "status": invoice.status,
        }

    def serialize_project(self, project: Project) -> dict[str, object]:
        return {
            "id": str(project.id),
            "client_id": str(project.client_id),
            "code": project.code,
            "name": project.name,
            "image_quantity": project.image_quantity,
            "status": project.status.value,
            "invoice": self.serialize_invoice(project.invoice) if project.invoice is not None else None,
            "created_at": project.created_at.isoformat(),
            "updated_at": project.updated_at.isoformat(),
        }

    @staticmethod
    def serialize_grading(grading: ProjectGrading) -> dict[str, object]:
        return {
            "id": str(grading.id),
            "project_id": str(grading.project_id),
            "name": grading.name,
            "image_quantity": grading.image_quantity,
            "sequence_no": grading.sequence_no,
        }

    @staticmethod
    def serialize_assignment(assignment: AssignmentRecord) -> dict[str, object]:
        return {
            "id": str(assignment.id),
            "task_id": str(assignment.task_id),
            "user_id": str(assignment.user_id),
            "image_quantity": assignment.image_quantity,
            "completed_image_quantity": assignment.completed_image_quantity,
        }

    def serialize_task(self, task: Task) -> dict[str, object]:
        snapshot = self.mutations.snapshot(task)
        return {
            "id": str(task.id),
            "project_id": str(task.project_id),
            "project_grading_id": str(task.project_grading_id) if task.project_grading_id else None,
            "code": task.code,
            "name": task.name,
            "image_quantity": task.image_quantity,
            "status": task.status.value,
            "due_date": task.due_date.isoformat() if task.due_date else None,
            "allocation": self.allocation_overview(snapshot),
            "assignments": [self.serialize_assignment(row) for row in snapshot.assignments],
        }

    @staticmethod
    def serialize_proposal(proposal: AllocationProposal) -> dict[str, object]:
        return {
            "task_id": str(proposal.task_id),
            "total": proposal.total,
            "allocations": [
                {"user_id": str(user_id), "image_quantity": quantity}
                for user_id, quantity in proposal.allocations.items()
            ],
            "seeded_user_ids": [str(user_id) for user_id in proposal.seeded_user_ids],
            "remaining": proposal.remaining,
            "total_allocated": proposal.check.total_allocated,
            "has_changes": proposal.check.has_changes,
            "is_valid": proposal.is_valid,
            "reason": proposal.check.reason,
        }

    @staticmethod
    def serialize_status_option(option: StatusOption) -> dict[str, object]:
        return {
            "status": option.status.value,
            "label": option.label,
            "disabled": option.disabled,
            "reason": option.reason,
        }

    @staticmethod
    def allocation_overview(snapshot: TaskSnapshot) -> dict[str, int]:
        return {
            "total": snapshot.total_quantity,
            "assigned": snapshot.allocated_quantity,
            "completed": snapshot.completed_quantity,
            "available": snapshot.total_quantity - snapshot.allocated_quantity,
        }

    # ---------- Clients ----------
    def create_client(self, *, data: ClientCreateData) -> Client:
        client = Client(
            code=data.code.strip(),
            display_name=data.display_name.strip(),
            category=data.category,
            created_at=datetime.utcnow(),
        )
        self.repo.add_client(client)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Client code already exists.") from exc

        self.db.refresh(client)
        return client

    # ---------- Projects ----------
    def create_project(self, *, context: RequestUserContext, data: ProjectCreateData) -> Project:
        self.ensure_permission(context, Permission.PROJECTS_CREATE)
        if self.repo.get_client(data.client_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found.")

        now = datetime.utcnow()
        project = Project(
            client_id=data.client_id,
            code=data.code.strip(),
            name=data.name.strip(),
            image_quantity=data.image_quantity,
            status=data.status,
            created_at=now,
            updated_at=now,
        )
        self.repo.add_project(project)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Project code already exists.") from exc

        self.db.refresh(project)
        self._publish(CacheEvent.PROJECT_CREATED, {"project_id": str(project.id)})
        return project

    def get_project(self, *, context: RequestUserContext, project_id: UUID) -> Project:
        self.ensure_permission(context, Permission.PROJECTS_READ)
        return self._get_project_or_404(project_id)

    def create_grading(
        self,
        *,
        context: RequestUserContext,
        project_id: UUID,
        data: GradingCreateData,
    ) -> ProjectGrading:
        self.ensure_permission(context, Permission.PROJECTS_UPDATE)
        project = self._get_project_or_404(project_id)

        grading = ProjectGrading(
            project_id=project.id,
            name=data.name.strip(),
            image_quantity=data.image_quantity,
            sequence_no=data.sequence_no,
        )
        self.repo.add_project_grading(grading)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Grading name already exists in this project.",
            ) from exc

        self.db.refresh(grading)
        self._publish(CacheEvent.PROJECT_UPDATED, {"project_id": str(project.id)})
        return grading

    def create_invoice(
        self,
        *,
        context: RequestUserContext,
        project_id: UUID,
        data: InvoiceCreateData,
    ) -> Invoice:
        self.ensure_permission(context, Permission.INVOICES_CREATE)
        project = self._get_project_or_404(project_id)
        if self.repo.get_invoice_for_project(project.id) is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Project already has an invoice.")

        invoice = Invoice(
            project_id=project.id,
            invoice_no=data.invoice_no.strip(),
            invoice_date=data.invoice_date,
            amount=data.amount,
            balance_amount=data.balance_amount,
            status=data.status.strip(),
        )
        self.repo.add_invoice(invoice)
        self.db.commit()
        self.db.refresh(invoice)
        self.db.refresh(project)
        self._publish(CacheEvent.PROJECT_UPDATED, {"project_id": str(project.id)})
        return invoice

    # ---------- Status transitions ----------
    @staticmethod
    def project_state(project: Project) -> ProjectState:
        invoice = project.invoice
        return ProjectState(
            id=project.id,
            status=project.status,
            client_category=project.client.category,
            invoice=(
                InvoiceState(status=invoice.status, balance_amount=Decimal(invoice.balance_amount))
                if invoice is not None
                else None
            ),
        )

    def status_options(self, *, context: RequestUserContext, project_id: UUID) -> list[StatusOption]:
        project = self.get_project(context=context, project_id=project_id)
        return self.guard.status_options(self.project_state(project), context)

    def _evaluate_status_change(
        self,
        context: RequestUserContext,
        project_id: UUID,
        target_status: str,
    ) -> tuple[Project, TransitionDecision]:
        project = self._get_project_or_404(project_id)
        try:
            target = ProjectStatus.parse(target_status)
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"Unknown project status: {target_status}.",
            ) from exc
        return project, self.guard.evaluate_selection(self.project_state(project), target, context)

    async def change_project_status(
        self,
        *,
        context: RequestUserContext,
        project_id: UUID,
        target_status: str,
    ) -> Project:
        self.ensure_permission(context, Permission.PROJECTS_UPDATE)
        project, decision = await run_in_threadpool(self._evaluate_status_change, context, project_id, target_status)
        if not decision.allowed:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=decision.reason)

        previous = project.status
        try:
            updated = await self.mutations.update_project_status(project.id, decision.target)
        except MutationError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

        logger.info("Project %s status changed %s -> %s", updated.id, previous.value, updated.status.value)
        self._publish(
            CacheEvent.PROJECT_UPDATED,
            {"project_id": str(updated.id), "status": updated.status.value},
        )
        return updated

    # ---------- Tasks ----------
    def create_task(self, *, context: RequestUserContext, project_id: UUID, data: TaskCreateData) -> Task:
        self.ensure_permission(context, Permission.TASKS_CREATE)
        project = self._get_project_or_404(project_id)

        if data.project_grading_id is not None:
            grading = self.repo.get_project_grading(data.project_grading_id)
            if grading is None or grading.project_id != project.id:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="project_grading_id must reference a grading of the same project.",
                )

        task = Task(
            project_id=project.id,
            project_grading_id=data.project_grading_id,
            code=data.code.strip(),
            name=data.name.strip(),
            image_quantity=data.image_quantity,
            status=TaskStatus.TODO,
            due_date=data.due_date,
        )
        self.repo.add_task(task)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Task code already exists in this project.",
            ) from exc

        self.db.refresh(task)
        self._publish(CacheEvent.TASK_CREATED, {"task_id": str(task.id), "project_id": str(project.id)})
        return task

    def list_tasks(self, *, context: RequestUserContext, project_id: UUID) -> list[Task]:
        self.ensure_permission(context, Permission.TASKS_READ)
        self._get_project_or_404(project_id)
        return self.repo.list_tasks(project_id)

    def get_task(self, *, context: RequestUserContext, task_id: UUID) -> Task:
        self.ensure_permission(context, Permission.TASKS_READ)
        return self._get_task_or_404(task_id)

    def update_task(self, *, context: RequestUserContext, task_id: UUID, data: TaskUpdateData) -> Task:
        self.ensure_permission(context, Permission.TASKS_UPDATE)
        task = self._get_task_or_404(task_id)

        previous_status = task.status
        if data.status is not None:
            task.status = data.status
        if data.clear_due_date:
            task.due_date = None
        elif data.due_date is not None:
            task.due_date = data.due_date

        self.db.commit()
        self.db.refresh(task)

        if task.status != previous_status:
            logger.info("Task %s status changed %s -> %s", task.id, previous_status.value, task.status.value)
            self._publish(
                CacheEvent.TASK_STATUS_CHANGED,
                {"task_id": str(task.id), "project_id": str(task.project_id), "status": task.status.value},
            )
        else:
            self._publish(CacheEvent.TASK_UPDATED, {"task_id": str(task.id), "project_id": str(task.project_id)})
        return task

    def delete_task(self, *, context: RequestUserContext, task_id: UUID) -> None:
        self.ensure_permission(context, Permission.TASKS_DELETE)
        task = self._get_task_or_404(task_id)
        project_id = task.project_id

        self.repo.delete_task(task)
        self.db.commit()
        logger.info("Task %s deleted from project %s", task_id, project_id)
        self._publish(CacheEvent.TASK_DELETED, {"task_id": str(task_id), "project_id": str(project_id)})

    # ---------- Allocation ----------
    def _task_snapshot_or_404(self, task_id: UUID, user_ids: Sequence[UUID] = ()) -> TaskSnapshot:
        task = self._get_task_or_404(task_id)
        self._ensure_users_exist(user_ids)
        return self.mutations.snapshot(task)

    def propose_allocation(
        self,
        *,
        context: RequestUserContext,
        task_id: UUID,
        user_ids: Sequence[UUID],
    ) -> AllocationProposal:
        self.ensure_permission(context, Permission.TASKS_UPDATE)
        return self.allocator.propose_allocation(self._task_snapshot_or_404(task_id, user_ids), user_ids)

    def auto_distribute(
        self,
        *,
        context: RequestUserContext,
        task_id: UUID,
        user_ids: Sequence[UUID],
    ) -> dict[UUID, int]:
        self.ensure_permission(context, Permission.TASKS_UPDATE)
        return self.allocator.auto_distribute(self._task_snapshot_or_404(task_id, user_ids), user_ids)

    async def commit_assignments(
        self,
        *,
        context: RequestUserContext,
        task_id: UUID,
        allocations: Mapping[UUID, int],
    ) -> CommitResult:
        self.ensure_permission(context, Permission.TASKS_UPDATE)
        snapshot = await run_in_threadpool(self._task_snapshot_or_404, task_id, list(allocations))

        try:
            return await self.allocator.commit(snapshot, allocations)
        except AllocationRejectedError as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.reason) from exc
        except (TaskNotFoundError, AssignmentNotFoundError) as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except MutationError as exc:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Failed to update assignments: {exc}",
            ) from exc

    async def record_completion(
        self,
        *,
        context: RequestUserContext,
        task_id: UUID,
        increment: int,
    ) -> CompletionOutcome:
        self.ensure_permission(context, Permission.TASKS_UPDATE)
        snapshot = await run_in_threadpool(self._task_snapshot_or_404, task_id)

        try:
            outcome = await self.allocator.record_completion(snapshot, context.user_id, increment)
        except NotAssignedError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
        except (TaskNotFoundError, AssignmentNotFoundError) as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

        if not outcome.check.allowed:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=outcome.check.reason)
        return outcome

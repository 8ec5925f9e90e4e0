"""Task, allocation and completion endpoints."""

from __future__ import annotations

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field, field_validator

from studio_ops.api.deps import get_studio_service
from studio_ops.core.auth import RequestUserContext, get_current_user_context
from studio_ops.models.entities import TaskStatus
from studio_ops.services.studio_service import StudioService, TaskCreateData, TaskUpdateData

router = APIRouter(tags=["tasks"])


class TaskCreatePayload(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    image_quantity: int | None = Field(default=None, ge=0)
    project_grading_id: UUID | None = None
    due_date: date | None = None


class TaskUpdatePayload(BaseModel):
    status: TaskStatus | None = None
    due_date: date | None = None


class UserSelectionPayload(BaseModel):
    user_ids: list[UUID] = Field(default_factory=list)


class AllocationItemPayload(BaseModel):
    user_id: UUID
    image_quantity: int = Field(ge=0)


class AssignmentsReplacePayload(BaseModel):
    allocations: list[AllocationItemPayload] = Field(default_factory=list)

    @field_validator("allocations")
    @classmethod
    def unique_users(cls, value: list[AllocationItemPayload]) -> list[AllocationItemPayload]:
        user_ids = [item.user_id for item in value]
        if len(user_ids) != len(set(user_ids)):
            raise ValueError("Each user may appear only once in allocations.")
        return value


class CompletionPayload(BaseModel):
    increment: int


@router.post("/projects/{project_id}/tasks", status_code=status.HTTP_201_CREATED)
def create_project_task(
    project_id: UUID,
    payload: TaskCreatePayload,
    context: RequestUserContext = Depends(get_current_user_context),
    service: StudioService = Depends(get_studio_service),
) -> dict[str, object]:
    task = service.create_task(
        context=context,
        project_id=project_id,
        data=TaskCreateData(
            code=payload.code,
            name=payload.name,
            image_quantity=payload.image_quantity,
            project_grading_id=payload.project_grading_id,
            due_date=payload.due_date,
        ),
    )
    return service.serialize_task(task)


@router.get("/projects/{project_id}/tasks")
def list_project_tasks(
    project_id: UUID,
    context: RequestUserContext = Depends(get_current_user_context),
    service: StudioService = Depends(get_studio_service),
) -> dict[str, list[object]]:
    items = service.list_tasks(context=context, project_id=project_id)
    return {"items": [service.serialize_task(task) for task in items]}


@router.get("/tasks/{task_id}")
def get_task(
    task_id: UUID,
    context: RequestUserContext = Depends(get_current_user_context),
    service: StudioService = Depends(get_studio_service),
) -> dict[str, object]:
    task = service.get_task(context=context, task_id=task_id)
    return service.serialize_task(task)


@router.patch("/tasks/{task_id}")
def update_task(
    task_id: UUID,
    payload: TaskUpdatePayload,
    context: RequestUserContext = Depends(get_current_user_context),
    service: StudioService = Depends(get_studio_service),
) -> dict[str, object]:
    task = service.update_task(
        context=context,
        task_id=task_id,
        data=TaskUpdateData(
            status=payload.status,
            due_date=payload.due_date,
            clear_due_date="due_date" in payload.model_fields_set and payload.due_date is None,
        ),
    )
    return service.serialize_task(task)


@router.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(
    task_id: UUID,
    context: RequestUserContext = Depends(get_current_user_context),
    service: StudioService = Depends(get_studio_service),
) -> Response:
    service.delete_task(context=context, task_id=task_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/tasks/{task_id}/allocation/proposal")
def propose_task_allocation(
    task_id: UUID,
    payload: UserSelectionPayload,
    context: RequestUserContext = Depends(get_current_user_context),
    service: StudioService = Depends(get_studio_service),
) -> dict[str, object]:
    proposal = service.propose_allocation(context=context, task_id=task_id, user_ids=payload.user_ids)
    return service.serialize_proposal(proposal)


@router.post("/tasks/{task_id}/allocation/auto-distribute")
def auto_distribute_task_allocation(
    task_id: UUID,
    payload: UserSelectionPayload,
    context: RequestUserContext = Depends(get_current_user_context),
    service: StudioService = Depends(get_studio_service),
) -> dict[str, list[object]]:
    allocations = service.auto_distribute(context=context, task_id=task_id, user_ids=payload.user_ids)
    return {
        "items": [
            {"user_id": str(user_id), "image_quantity": quantity}
            for user_id, quantity in allocations.items()
        ]
    }


@router.put("/tasks/{task_id}/assignments")
async def replace_task_assignments(
    task_id: UUID,
    payload: AssignmentsReplacePayload,
    context: RequestUserContext = Depends(get_current_user_context),
    service: StudioService = Depends(get_studio_service),
) -> dict[str, object]:
    result = await service.commit_assignments(
        context=context,
        task_id=task_id,
        allocations={item.user_id: item.image_quantity for item in payload.allocations},
    )
    return {
        "task_id": str(result.task_id),
        "operations": [
            {
                "kind": operation.kind,
                "user_id": str(operation.user_id),
                "assignment_id": str(operation.assignment_id),
                "image_quantity": operation.image_quantity,
            }
            for operation in result.operations
        ],
        "items": [service.serialize_assignment(row) for row in result.assignments],
    }


@router.post("/tasks/{task_id}/completion")
async def record_task_completion(
    task_id: UUID,
    payload: CompletionPayload,
    context: RequestUserContext = Depends(get_current_user_context),
    service: StudioService = Depends(get_studio_service),
) -> dict[str, object]:
    outcome = await service.record_completion(context=context, task_id=task_id, increment=payload.increment)
    check = outcome.check
    return {
        "assignment": service.serialize_assignment(outcome.assignment) if outcome.assignment else None,
        "own_completed": check.own_completed,
        "others_completed": check.others_completed,
        "max_increment": check.max_increment,
    }

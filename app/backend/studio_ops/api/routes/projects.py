"""Client, project, invoice and project status endpoints."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from studio_ops.api.deps import get_studio_service
from studio_ops.core.auth import Permission, RequestUserContext, get_current_user_context, require_permissions
from studio_ops.models.entities import ClientCategory, ProjectStatus
from studio_ops.services.studio_service import (
    ClientCreateData,
    GradingCreateData,
    InvoiceCreateData,
    ProjectCreateData,
    StudioService,
)

router = APIRouter(tags=["projects"])


class ClientCreatePayload(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    display_name: str = Field(min_length=1, max_length=255)
    category: ClientCategory = ClientCategory.PERMANENT


class ProjectCreatePayload(BaseModel):
    client_id: UUID
    code: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    image_quantity: int | None = Field(default=None, ge=0)
    status: ProjectStatus = ProjectStatus.DRAFT


class GradingCreatePayload(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    image_quantity: int | None = Field(default=None, ge=0)
    sequence_no: int = Field(default=0, ge=0)


class InvoiceCreatePayload(BaseModel):
    invoice_no: str = Field(min_length=1, max_length=64)
    invoice_date: date
    amount: Decimal = Field(ge=0)
    balance_amount: Decimal = Field(ge=0)
    status: str = Field(default="unpaid", min_length=1, max_length=32)


class StatusChangePayload(BaseModel):
    status: str = Field(min_length=1, max_length=32)


@router.post("/clients", status_code=status.HTTP_201_CREATED)
def create_client(
    payload: ClientCreatePayload,
    _: RequestUserContext = Depends(require_permissions(Permission.CLIENTS_CREATE)),
    service: StudioService = Depends(get_studio_service),
) -> dict[str, object]:
    client = service.create_client(
        data=ClientCreateData(
            code=payload.code,
            display_name=payload.display_name,
            category=payload.category,
        ),
    )
    return service.serialize_client(client)


@router.post("/projects", status_code=status.HTTP_201_CREATED)
def create_project(
    payload: ProjectCreatePayload,
    context: RequestUserContext = Depends(get_current_user_context),
    service: StudioService = Depends(get_studio_service),
) -> dict[str, object]:
    project = service.create_project(
        context=context,
        data=ProjectCreateData(
            client_id=payload.client_id,
            code=payload.code,
            name=payload.name,
            image_quantity=payload.image_quantity,
            status=payload.status,
        ),
    )
    return service.serialize_project(project)


@router.get("/projects/{project_id}")
def get_project(
    project_id: UUID,
    context: RequestUserContext = Depends(get_current_user_context),
    service: StudioService = Depends(get_studio_service),
) -> dict[str, object]:
    project = service.get_project(context=context, project_id=project_id)
    return service.serialize_project(project)


@router.post("/projects/{project_id}/gradings", status_code=status.HTTP_201_CREATED)
def create_project_grading(
    project_id: UUID,
    payload: GradingCreatePayload,
    context: RequestUserContext = Depends(get_current_user_context),
    service: StudioService = Depends(get_studio_service),
) -> dict[str, object]:
    grading = service.create_grading(
        context=context,
        project_id=project_id,
        data=GradingCreateData(
            name=payload.name,
            image_quantity=payload.image_quantity,
            sequence_no=payload.sequence_no,
        ),
    )
    return service.serialize_grading(grading)


@router.post("/projects/{project_id}/invoice", status_code=status.HTTP_201_CREATED)
def create_project_invoice(
    project_id: UUID,
    payload: InvoiceCreatePayload,
    context: RequestUserContext = Depends(get_current_user_context),
    service: StudioService = Depends(get_studio_service),
) -> dict[str, object]:
    invoice = service.create_invoice(
        context=context,
        project_id=project_id,
        data=InvoiceCreateData(
            invoice_no=payload.invoice_no,
            invoice_date=payload.invoice_date,
            amount=payload.amount,
            balance_amount=payload.balance_amount,
            status=payload.status,
        ),
    )
    return service.serialize_invoice(invoice)


@router.get("/projects/{project_id}/status-options")
def list_project_status_options(
    project_id: UUID,
    context: RequestUserContext = Depends(get_current_user_context),
    service: StudioService = Depends(get_studio_service),
) -> dict[str, list[object]]:
    options = service.status_options(context=context, project_id=project_id)
    return {"items": [service.serialize_status_option(option) for option in options]}


@router.post("/projects/{project_id}/status")
async def change_project_status(
    project_id: UUID,
    payload: StatusChangePayload,
    context: RequestUserContext = Depends(get_current_user_context),
    service: StudioService = Depends(get_studio_service),
) -> dict[str, object]:
    project = await service.change_project_status(
        context=context,
        project_id=project_id,
        target_status=payload.status,
    )
    return await run_in_threadpool(service.serialize_project, project)

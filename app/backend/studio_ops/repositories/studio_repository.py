"""Repository helpers for clients, projects, tasks and task assignments."""

from __future__ import annotations

from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from studio_ops.models.entities import (
    Client,
    Invoice,
    Project,
    ProjectGrading,
    Task,
    TaskAssignment,
    User,
)


class StudioRepository:
    """Persistence operations used by project, status and allocation services."""

    def __init__(self, db: Session) -> None:
        self.db = db

    # ---------- Users ----------
    def list_users_by_ids(self, user_ids: Iterable[UUID]) -> list[User]:
        ids = set(user_ids)
        if not ids:
            return []
        return self.db.scalars(select(User).where(User.id.in_(ids))).all()

    # ---------- Clients ----------
    def get_client(self, client_id: UUID) -> Client | None:
        return self.db.scalar(select(Client).where(Client.id == client_id))

    def add_client(self, client: Client) -> Client:
        self.db.add(client)
        self.db.flush()
        return client

    # ---------- Projects ----------
    def get_project(self, project_id: UUID) -> Project | None:
        return self.db.scalar(select(Project).where(Project.id == project_id))

    def add_project(self, project: Project) -> Project:
        self.db.add(project)
        self.db.flush()
        return project

    def get_project_grading(self, grading_id: UUID) -> ProjectGrading | None:
        return self.db.scalar(select(ProjectGrading).where(ProjectGrading.id == grading_id))

    def add_project_grading(self, grading: ProjectGrading) -> ProjectGrading:
        self.db.add(grading)
        self.db.flush()
        return grading

    # ---------- Invoices ----------
    def get_invoice_for_project(self, project_id: UUID) -> Invoice | None:
        return self.db.scalar(select(Invoice).where(Invoice.project_id == project_id))

    def add_invoice(self, invoice: Invoice) -> Invoice:
        self.db.add(invoice)
        self.db.flush()
        return invoice

    # ---------- Tasks ----------
    def list_tasks(self, project_id: UUID) -> list[Task]:
        return self.db.scalars(
            select(Task)
            .where(Task.project_id == project_id)
            .order_by(Task.code.asc())
        ).all()

    def get_task(self, task_id: UUID) -> Task | None:
        return self.db.scalar(select(Task).where(Task.id == task_id))

    def add_task(self, task: Task) -> Task:
        self.db.add(task)
        self.db.flush()
        return task

    def delete_task(self, task: Task) -> None:
        self.db.delete(task)
        self.db.flush()

    # ---------- Task assignments ----------
    def list_assignments_for_task(self, task_id: UUID) -> list[TaskAssignment]:
        return self.db.scalars(
            select(TaskAssignment)
            .where(TaskAssignment.task_id == task_id)
            .order_by(TaskAssignment.created_at.asc(), TaskAssignment.id.asc())
        ).all()

    def get_assignment(self, assignment_id: UUID) -> TaskAssignment | None:
        return self.db.scalar(select(TaskAssignment).where(TaskAssignment.id == assignment_id))

    def add_assignment(self, assignment: TaskAssignment) -> TaskAssignment:
        self.db.add(assignment)
        self.db.flush()
        return assignment

    def delete_assignment(self, assignment: TaskAssignment) -> None:
        self.db.delete(assignment)
        self.db.flush()

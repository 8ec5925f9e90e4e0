"""ORM model package."""

from studio_ops.models.entities import (
    Client,
    Invoice,
    Project,
    ProjectGrading,
    Task,
    TaskAssignment,
    User,
)

__all__ = [
    "Client",
    "Invoice",
    "Project",
    "ProjectGrading",
    "Task",
    "TaskAssignment",
    "User",
]

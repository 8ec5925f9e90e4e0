"""Authentication context extraction and permission guard utilities."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from studio_ops.core.config import get_settings
from studio_ops.db.dependencies import get_db_session
from studio_ops.models.entities import RoleType, User


class Permission(str, Enum):
    """Capability identifiers in ``<module>.<action>`` form."""

    PROJECTS_READ = "projects.read"
    PROJECTS_CREATE = "projects.create"
    PROJECTS_UPDATE = "projects.update"
    PROJECTS_APPROVE = "projects.approve"
    TASKS_READ = "tasks.read"
    TASKS_CREATE = "tasks.create"
    TASKS_UPDATE = "tasks.update"
    TASKS_DELETE = "tasks.delete"
    CLIENTS_CREATE = "clients.create"
    INVOICES_CREATE = "invoices.create"


ROLE_PERMISSIONS: dict[RoleType, frozenset[Permission]] = {
    RoleType.ADMIN: frozenset(Permission),
    RoleType.MANAGER: frozenset(
        {
            Permission.PROJECTS_READ,
            Permission.PROJECTS_CREATE,
            Permission.PROJECTS_UPDATE,
            Permission.TASKS_READ,
            Permission.TASKS_CREATE,
            Permission.TASKS_UPDATE,
            Permission.TASKS_DELETE,
            Permission.CLIENTS_CREATE,
            Permission.INVOICES_CREATE,
        }
    ),
    RoleType.EDITOR: frozenset(
        {
            Permission.PROJECTS_READ,
            Permission.TASKS_READ,
            Permission.TASKS_UPDATE,
        }
    ),
    RoleType.VIEWER: frozenset({Permission.PROJECTS_READ, Permission.TASKS_READ}),
}


@dataclass(frozen=True)
class RequestUserContext:
    """Authenticated request actor resolved from headers and DB state."""

    user_id: UUID
    microsoft_oid: str
    email: str
    display_name: str
    status: str
    role: RoleType

    @property
    def permissions(self) -> frozenset[Permission]:
        """Permissions granted through the user's role."""

        return ROLE_PERMISSIONS.get(self.role, frozenset())


def has_permission(context: RequestUserContext, permission: Permission) -> bool:
    """Permission oracle consumed by the status guard and the API layer."""

    return permission in context.permissions


def _require_identity_headers(
    x_ms_oid: str | None,
    x_ms_email: str | None,
    x_ms_display_name: str | None,
) -> tuple[str, str, str]:
    if not x_ms_oid or not x_ms_email:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=(
                "Missing identity headers. Expected X-MS-OID and X-MS-EMAIL or enable development principal fallback."
            ),
        )

    display_name = x_ms_display_name or x_ms_email
    return x_ms_oid.strip(), x_ms_email.strip().lower(), display_name.strip()


def _resolve_identity(
    x_ms_oid: str | None,
    x_ms_email: str | None,
    x_ms_display_name: str | None,
) -> tuple[str, str, str]:
    settings = get_settings()
    if x_ms_oid and x_ms_email:
        return _require_identity_headers(x_ms_oid, x_ms_email, x_ms_display_name)

    if settings.auth_allow_dev_principal:
        return (
            settings.auth_dev_microsoft_oid.strip(),
            settings.auth_dev_email.strip().lower(),
            settings.auth_dev_display_name.strip(),
        )

    return _require_identity_headers(x_ms_oid, x_ms_email, x_ms_display_name)


def _default_role() -> RoleType:
    try:
        return RoleType(get_settings().auth_default_role.strip().lower())
    except ValueError:
        return RoleType.VIEWER


def _upsert_user(db: Session, *, microsoft_oid: str, email: str, display_name: str) -> User:
    user = db.scalar(select(User).where(User.microsoft_oid == microsoft_oid))
    now = datetime.utcnow()

    if user is None:
        user = User(
            microsoft_oid=microsoft_oid,
            email=email,
            display_name=display_name,
            role=_default_role(),
            status="active",
            last_login_at=now,
            created_at=now,
            updated_at=now,
        )
        db.add(user)
        db.flush()
        return user

    changed = False
    if user.email != email:
        user.email = email
        changed = True
    if user.display_name != display_name:
        user.display_name = display_name
        changed = True

    user.last_login_at = now
    if changed:
        user.updated_at = now
    db.flush()
    return user


def ensure_user_principal(
    db: Session,
    *,
    microsoft_oid: str,
    email: str,
    display_name: str,
    role: RoleType | None = None,
) -> User:
    """Ensure user exists and return persisted row.

    Utility exported for tests and seed helpers. When ``role`` is given the
    stored role is overwritten.
    """

    normalized_oid = microsoft_oid.strip()
    normalized_email = email.strip().lower()
    normalized_display_name = display_name.strip() or normalized_email

    user = _upsert_user(
        db,
        microsoft_oid=normalized_oid,
        email=normalized_email,
        display_name=normalized_display_name,
    )
    if role is not None and user.role is not role:
        user.role = role
        user.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(user)
    return user


def get_current_user_context(
    x_ms_oid: str | None = Header(default=None, alias="X-MS-OID"),
    x_ms_email: str | None = Header(default=None, alias="X-MS-EMAIL"),
    x_ms_display_name: str | None = Header(default=None, alias="X-MS-DISPLAY-NAME"),
    db: Session = Depends(get_db_session),
) -> RequestUserContext:
    """Resolve current request user and role.

    Header strategy: trusted headers from a proxy or test clients, with the
    development principal as fallback when enabled.
    """

    microsoft_oid, email, display_name = _resolve_identity(x_ms_oid, x_ms_email, x_ms_display_name)
    user = _upsert_user(db, microsoft_oid=microsoft_oid, email=email, display_name=display_name)
    db.commit()

    return RequestUserContext(
        user_id=user.id,
        microsoft_oid=user.microsoft_oid,
        email=user.email,
        display_name=user.display_name,
        status=user.status,
        role=user.role,
    )


def require_permissions(*permissions: Permission):
    """Dependency factory requiring every provided permission."""

    required = set(permissions)

    def dependency(context: RequestUserContext = Depends(get_current_user_context)) -> RequestUserContext:
        if not required.issubset(context.permissions):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions for this operation.",
            )
        return context

    return dependency

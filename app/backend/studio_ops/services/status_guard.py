"""Project status transition guard.

The statuses offered as next targets depend on invoice and lifecycle state,
and two targets carry extra financial guards:

* DELIVERED for a walk-in client with an invoice needs the project-approve
  permission and a paid invoice.
* REOPEN is refused once the invoice is paid.

``evaluate_transition`` applies the per-target guards only; ``evaluate_selection``
additionally limits the target to the offerable set, the way a status picker
does. Rejections are returned as ``TransitionDecision`` values with a reason
the caller can show as is.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID

from studio_ops.core.auth import Permission
from studio_ops.core.logging import get_logger
from studio_ops.models.entities import ClientCategory, ProjectStatus

logger = get_logger(__name__)

PAID_INVOICE_STATUS = "fully_paid"

STATUS_LABELS: dict[ProjectStatus, str] = {
    ProjectStatus.DRAFT: "Draft",
    ProjectStatus.ACTIVE: "Active",
    ProjectStatus.IN_PROGRESS: "In Progress",
    ProjectStatus.REVIEW: "Review",
    ProjectStatus.REOPEN: "Reopen",
    ProjectStatus.COMPLETED: "Completed",
    ProjectStatus.ON_HOLD: "On Hold",
    ProjectStatus.DELIVERED: "Delivered",
    ProjectStatus.REQUESTED: "Pending Approval",
}


class PermissionOracle(Protocol):
    def __call__(self, user: Any, permission: Permission, /) -> bool: ...


@dataclass(frozen=True, slots=True)
class InvoiceState:
    status: str
    balance_amount: Decimal

    @property
    def is_paid(self) -> bool:
        return self.status == PAID_INVOICE_STATUS or self.balance_amount <= 0


@dataclass(frozen=True, slots=True)
class ProjectState:
    status: ProjectStatus
    client_category: ClientCategory
    invoice: InvoiceState | None = None
    id: UUID | None = None

    @property
    def has_invoice(self) -> bool:
        return self.invoice is not None


@dataclass(frozen=True, slots=True)
class TransitionDecision:
    allowed: bool
    target: ProjectStatus
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class StatusOption:
    status: ProjectStatus
    label: str
    disabled: bool
    reason: str | None = None


def offerable_statuses(project: ProjectState) -> list[ProjectStatus]:
    """Statuses a caller may pick from, in declaration order."""

    if project.has_invoice or project.status is ProjectStatus.DELIVERED:
        return [ProjectStatus.REOPEN]
    if project.status is ProjectStatus.COMPLETED:
        return [ProjectStatus.DELIVERED, ProjectStatus.REOPEN]
    return list(ProjectStatus)


def _unavailable_reason(project: ProjectState) -> str:
    if project.has_invoice or project.status is ProjectStatus.DELIVERED:
        return "Invoiced or delivered projects can only be reopened."
    return "Completed projects can only be delivered or reopened."


class ProjectStatusTransitionGuard:
    def __init__(self, has_permission: PermissionOracle, *, currency_symbol: str = "₹") -> None:
        self.has_permission = has_permission
        self.currency_symbol = currency_symbol

    def offerable_statuses(self, project: ProjectState) -> list[ProjectStatus]:
        return offerable_statuses(project)

    def _target_block_reason(self, project: ProjectState, target: ProjectStatus, actor: Any) -> str | None:
        invoice = project.invoice
        if target is ProjectStatus.DELIVERED:
            if invoice is None or project.client_category is not ClientCategory.WALK_IN:
                return None
            if not self.has_permission(actor, Permission.PROJECTS_APPROVE):
                return "Permission required to deliver walk-in projects."
            if not invoice.is_paid:
                return f"Invoice must be paid first. Current balance: {self.currency_symbol}{invoice.balance_amount:.2f}"
            return None

        if target is ProjectStatus.REOPEN and invoice is not None and invoice.is_paid:
            return "Invoice is fully paid; a settled project cannot be reopened."
        return None

    def evaluate_transition(
        self,
        project: ProjectState,
        target_status: ProjectStatus | str,
        acting_user: Any,
    ) -> TransitionDecision:
        """Apply the per-target guards to a requested status."""

        target = ProjectStatus.parse(target_status)
        if target is project.status:
            return self._decide(project, target, f"Project is already {STATUS_LABELS[target]}.")
        return self._decide(project, target, self._target_block_reason(project, target, acting_user))

    def evaluate_selection(
        self,
        project: ProjectState,
        target_status: ProjectStatus | str,
        acting_user: Any,
    ) -> TransitionDecision:
        """Like ``evaluate_transition`` but also refuses targets outside the offerable set."""

        target = ProjectStatus.parse(target_status)
        if target not in offerable_statuses(project):
            return self._decide(project, target, _unavailable_reason(project))
        return self.evaluate_transition(project, target, acting_user)

    def _decide(self, project: ProjectState, target: ProjectStatus, reason: str | None) -> TransitionDecision:
        if reason is not None:
            logger.info(
                "Blocked project %s transition %s -> %s: %s",
                project.id,
                project.status.value,
                target.value,
                reason,
            )
            return TransitionDecision(allowed=False, target=target, reason=reason)
        return TransitionDecision(allowed=True, target=target)

    def status_options(self, project: ProjectState, acting_user: Any) -> list[StatusOption]:
        """Offerable statuses with a disabled flag for the ones a guard blocks."""

        options: list[StatusOption] = []
        for status in offerable_statuses(project):
            reason = self._target_block_reason(project, status, acting_user)
            options.append(
                StatusOption(
                    status=status,
                    label=STATUS_LABELS[status],
                    disabled=reason is not None,
                    reason=reason,
                )
            )
        return options

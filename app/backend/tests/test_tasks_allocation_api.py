from __future__ import annotations

import uuid
from typing import Any

from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import Session

from studio_ops.core.auth import ensure_user_principal
from studio_ops.models.entities import RoleType, TaskAssignment
from studio_ops.services.event_bus import CacheEvent


def _headers(oid: str, email: str, display_name: str) -> dict[str, str]:
    return {
        "X-MS-OID": oid,
        "X-MS-EMAIL": email,
        "X-MS-DISPLAY-NAME": display_name,
    }


def _principal(db: Session, name: str, role: RoleType) -> tuple[str, dict[str, str]]:
    oid = f"oid-{name}"
    email = f"{name}@test.local"
    user = ensure_user_principal(db, microsoft_oid=oid, email=email, display_name=name.title(), role=role)
    return str(user.id), _headers(oid, email, name.title())


def _setup_task(client: TestClient, headers: dict[str, str], *, image_quantity: int | None = None) -> tuple[str, str]:
    client_id = client.post(
        "/api/v1/clients",
        headers=headers,
        json={"code": "CL-1", "display_name": "Studio Client"},
    ).json()["id"]
    project_id = client.post(
        "/api/v1/projects",
        headers=headers,
        json={"client_id": client_id, "code": "PRJ-1", "name": "Catalogue", "image_quantity": 10},
    ).json()["id"]
    task = client.post(
        f"/api/v1/projects/{project_id}/tasks",
        headers=headers,
        json={"code": "EDIT", "name": "Retouch", "image_quantity": image_quantity},
    )
    assert task.status_code == 201
    return project_id, task.json()["id"]


def _allocations(body: dict[str, Any]) -> dict[str, int]:
    return {item["user_id"]: item["image_quantity"] for item in body["allocations"]}


def test_task_total_inherits_from_grading_then_project(client: TestClient, db_session: Session) -> None:
    _, admin = _principal(db_session, "admin", RoleType.ADMIN)
    project_id, task_id = _setup_task(client, admin)
    grading = client.post(
        f"/api/v1/projects/{project_id}/gradings",
        headers=admin,
        json={"name": "Premium", "image_quantity": 6},
    )
    assert grading.status_code == 201

    graded = client.post(
        f"/api/v1/projects/{project_id}/tasks",
        headers=admin,
        json={"code": "GRADE", "name": "Colour grade", "project_grading_id": grading.json()["id"]},
    )
    inherited = client.get(f"/api/v1/tasks/{task_id}", headers=admin)

    assert graded.json()["allocation"] == {"total": 6, "assigned": 0, "completed": 0, "available": 6}
    assert inherited.json()["allocation"]["total"] == 10


def test_task_with_grading_from_other_project_is_rejected(client: TestClient, db_session: Session) -> None:
    _, admin = _principal(db_session, "admin", RoleType.ADMIN)
    project_id, _ = _setup_task(client, admin)

    response = client.post(
        f"/api/v1/projects/{project_id}/tasks",
        headers=admin,
        json={"code": "BAD", "name": "Bad", "project_grading_id": str(uuid.uuid4())},
    )

    assert response.status_code == 422


def test_proposal_commit_and_reproposal_flow(client: TestClient, db_session: Session) -> None:
    _, admin = _principal(db_session, "admin", RoleType.ADMIN)
    a, _ = _principal(db_session, "anna", RoleType.EDITOR)
    b, _ = _principal(db_session, "ben", RoleType.EDITOR)
    c, _ = _principal(db_session, "cara", RoleType.EDITOR)
    _, task_id = _setup_task(client, admin)
    received: list[dict[str, Any]] = []
    client.app.state.event_bus.subscribe(CacheEvent.TASK_ASSIGNMENT_CHANGED, received.append)

    proposal = client.post(f"/api/v1/tasks/{task_id}/allocation/proposal", headers=admin, json={"user_ids": [a, b, c]})
    assert proposal.status_code == 200
    assert _allocations(proposal.json()) == {a: 4, b: 3, c: 3}
    assert proposal.json()["is_valid"] is True

    committed = client.put(
        f"/api/v1/tasks/{task_id}/assignments",
        headers=admin,
        json={"allocations": proposal.json()["allocations"]},
    )
    assert committed.status_code == 200
    assert [operation["kind"] for operation in committed.json()["operations"]] == ["add", "add", "add"]
    assert {item["user_id"]: item["image_quantity"] for item in committed.json()["items"]} == {a: 4, b: 3, c: 3}
    assert received == [{"task_id": task_id}]

    again = client.post(f"/api/v1/tasks/{task_id}/allocation/proposal", headers=admin, json={"user_ids": [a, b, c]})
    assert again.json()["is_valid"] is False
    assert again.json()["reason"] == "No changes to save."
    assert again.json()["seeded_user_ids"] == [a, b, c]

    overview = client.get(f"/api/v1/tasks/{task_id}", headers=admin).json()["allocation"]
    assert overview == {"total": 10, "assigned": 10, "completed": 0, "available": 0}


def test_reallocation_seeds_existing_users(client: TestClient, db_session: Session) -> None:
    _, admin = _principal(db_session, "admin", RoleType.ADMIN)
    a, _ = _principal(db_session, "anna", RoleType.EDITOR)
    b, _ = _principal(db_session, "ben", RoleType.EDITOR)
    _, task_id = _setup_task(client, admin)
    client.put(
        f"/api/v1/tasks/{task_id}/assignments",
        headers=admin,
        json={"allocations": [{"user_id": a, "image_quantity": 10}]},
    )
    client.put(
        f"/api/v1/tasks/{task_id}/assignments",
        headers=admin,
        json={"allocations": [{"user_id": a, "image_quantity": 4}, {"user_id": b, "image_quantity": 6}]},
    )

    proposal = client.post(f"/api/v1/tasks/{task_id}/allocation/proposal", headers=admin, json={"user_ids": [a, b]})
    distributed = client.post(
        f"/api/v1/tasks/{task_id}/allocation/auto-distribute",
        headers=admin,
        json={"user_ids": [a, b]},
    )

    assert _allocations(proposal.json()) == {a: 4, b: 6}
    assert {item["user_id"]: item["image_quantity"] for item in distributed.json()["items"]} == {a: 5, b: 5}


def test_overallocation_is_rejected(client: TestClient, db_session: Session) -> None:
    _, admin = _principal(db_session, "admin", RoleType.ADMIN)
    a, _ = _principal(db_session, "anna", RoleType.EDITOR)
    b, _ = _principal(db_session, "ben", RoleType.EDITOR)
    _, task_id = _setup_task(client, admin)

    response = client.put(
        f"/api/v1/tasks/{task_id}/assignments",
        headers=admin,
        json={"allocations": [{"user_id": a, "image_quantity": 6}, {"user_id": b, "image_quantity": 5}]},
    )

    assert response.status_code == 422
    assert response.json()["detail"] == "Allocated 11 images exceeds task total of 10."
    assert client.get(f"/api/v1/tasks/{task_id}", headers=admin).json()["assignments"] == []


def test_single_user_commit_takes_full_total_and_empty_commit_clears(client: TestClient, db_session: Session) -> None:
    _, admin = _principal(db_session, "admin", RoleType.ADMIN)
    a, _ = _principal(db_session, "anna", RoleType.EDITOR)
    _, task_id = _setup_task(client, admin, image_quantity=8)

    single = client.put(
        f"/api/v1/tasks/{task_id}/assignments",
        headers=admin,
        json={"allocations": [{"user_id": a, "image_quantity": 1}]},
    )
    cleared = client.put(f"/api/v1/tasks/{task_id}/assignments", headers=admin, json={"allocations": []})

    assert [item["image_quantity"] for item in single.json()["items"]] == [8]
    assert cleared.status_code == 200
    assert cleared.json()["items"] == []


def test_duplicate_users_in_allocation_payload_are_rejected(client: TestClient, db_session: Session) -> None:
    _, admin = _principal(db_session, "admin", RoleType.ADMIN)
    a, _ = _principal(db_session, "anna", RoleType.EDITOR)
    _, task_id = _setup_task(client, admin)

    response = client.put(
        f"/api/v1/tasks/{task_id}/assignments",
        headers=admin,
        json={"allocations": [{"user_id": a, "image_quantity": 5}, {"user_id": a, "image_quantity": 5}]},
    )

    assert response.status_code == 422


def test_unknown_user_or_task_returns_404(client: TestClient, db_session: Session) -> None:
    _, admin = _principal(db_session, "admin", RoleType.ADMIN)
    _, task_id = _setup_task(client, admin)

    unknown_user = client.post(
        f"/api/v1/tasks/{task_id}/allocation/proposal",
        headers=admin,
        json={"user_ids": [str(uuid.uuid4())]},
    )
    unknown_task = client.get(f"/api/v1/tasks/{uuid.uuid4()}", headers=admin)

    assert unknown_user.status_code == 404
    assert unknown_task.status_code == 404


def test_viewer_cannot_allocate(client: TestClient, db_session: Session) -> None:
    _, admin = _principal(db_session, "admin", RoleType.ADMIN)
    a, viewer = _principal(db_session, "victor", RoleType.VIEWER)
    _, task_id = _setup_task(client, admin)

    response = client.post(f"/api/v1/tasks/{task_id}/allocation/proposal", headers=viewer, json={"user_ids": [a]})

    assert response.status_code == 403


def test_completion_increments_are_bounded_by_task_total(client: TestClient, db_session: Session) -> None:
    _, admin = _principal(db_session, "admin", RoleType.ADMIN)
    a, anna = _principal(db_session, "anna", RoleType.EDITOR)
    b, ben = _principal(db_session, "ben", RoleType.EDITOR)
    c, cara = _principal(db_session, "cara", RoleType.EDITOR)
    _, outsider = _principal(db_session, "otto", RoleType.EDITOR)
    _, task_id = _setup_task(client, admin)
    client.put(
        f"/api/v1/tasks/{task_id}/assignments",
        headers=admin,
        json={
            "allocations": [
                {"user_id": a, "image_quantity": 4},
                {"user_id": b, "image_quantity": 3},
                {"user_id": c, "image_quantity": 3},
            ]
        },
    )

    first = client.post(f"/api/v1/tasks/{task_id}/completion", headers=anna, json={"increment": 4})
    second = client.post(f"/api/v1/tasks/{task_id}/completion", headers=ben, json={"increment": 3})
    rejected = client.post(f"/api/v1/tasks/{task_id}/completion", headers=cara, json={"increment": 4})
    accepted = client.post(f"/api/v1/tasks/{task_id}/completion", headers=cara, json={"increment": 3})
    not_assigned = client.post(f"/api/v1/tasks/{task_id}/completion", headers=outsider, json={"increment": 1})

    assert first.status_code == 200
    assert first.json()["assignment"]["completed_image_quantity"] == 4
    assert second.status_code == 200
    assert rejected.status_code == 422
    assert rejected.json()["detail"] == (
        "Cannot add 4 images. You've completed 0, others completed 7. You can add up to 3 more images."
    )
    assert accepted.status_code == 200
    assert accepted.json()["max_increment"] == 3
    assert not_assigned.status_code == 403
    assert not_assigned.json()["detail"] == "You are not assigned to this task."

    overview = client.get(f"/api/v1/tasks/{task_id}", headers=admin).json()["allocation"]
    assert overview["completed"] == 10


def test_task_status_change_publishes_status_event(client: TestClient, db_session: Session) -> None:
    _, admin = _principal(db_session, "admin", RoleType.ADMIN)
    _, editor = _principal(db_session, "erin", RoleType.EDITOR)
    project_id, task_id = _setup_task(client, admin)
    status_events: list[dict[str, Any]] = []
    updated_events: list[dict[str, Any]] = []
    client.app.state.event_bus.subscribe(CacheEvent.TASK_STATUS_CHANGED, status_events.append)
    client.app.state.event_bus.subscribe(CacheEvent.TASK_UPDATED, updated_events.append)

    response = client.patch(f"/api/v1/tasks/{task_id}", headers=editor, json={"status": "IN_PROGRESS"})

    assert response.status_code == 200
    assert response.json()["status"] == "IN_PROGRESS"
    assert status_events == [{"task_id": task_id, "project_id": project_id, "status": "IN_PROGRESS"}]
    assert updated_events == []


def test_task_due_date_update_publishes_updated_event(client: TestClient, db_session: Session) -> None:
    _, admin = _principal(db_session, "admin", RoleType.ADMIN)
    project_id, task_id = _setup_task(client, admin)
    status_events: list[dict[str, Any]] = []
    updated_events: list[dict[str, Any]] = []
    client.app.state.event_bus.subscribe(CacheEvent.TASK_STATUS_CHANGED, status_events.append)
    client.app.state.event_bus.subscribe(CacheEvent.TASK_UPDATED, updated_events.append)

    dated = client.patch(f"/api/v1/tasks/{task_id}", headers=admin, json={"due_date": "2026-11-02"})
    same_status = client.patch(f"/api/v1/tasks/{task_id}", headers=admin, json={"status": "TODO"})
    cleared = client.patch(f"/api/v1/tasks/{task_id}", headers=admin, json={"due_date": None})

    assert dated.status_code == 200
    assert dated.json()["due_date"] == "2026-11-02"
    assert same_status.json()["due_date"] == "2026-11-02"
    assert cleared.json()["due_date"] is None
    assert status_events == []
    assert updated_events == [{"task_id": task_id, "project_id": project_id}] * 3


def test_task_update_requires_task_update_permission(client: TestClient, db_session: Session) -> None:
    _, admin = _principal(db_session, "admin", RoleType.ADMIN)
    _, viewer = _principal(db_session, "vera", RoleType.VIEWER)
    _, task_id = _setup_task(client, admin)

    forbidden = client.patch(f"/api/v1/tasks/{task_id}", headers=viewer, json={"status": "REVIEW"})
    missing = client.patch(f"/api/v1/tasks/{uuid.uuid4()}", headers=admin, json={"status": "REVIEW"})
    invalid = client.patch(f"/api/v1/tasks/{task_id}", headers=admin, json={"status": "SHIPPED"})

    assert forbidden.status_code == 403
    assert missing.status_code == 404
    assert invalid.status_code == 422


def test_task_delete_cascades_assignments_and_publishes(client: TestClient, db_session: Session) -> None:
    _, admin = _principal(db_session, "admin", RoleType.ADMIN)
    a, _ = _principal(db_session, "anna", RoleType.EDITOR)
    b, _ = _principal(db_session, "ben", RoleType.EDITOR)
    project_id, task_id = _setup_task(client, admin)
    client.put(
        f"/api/v1/tasks/{task_id}/assignments",
        headers=admin,
        json={"allocations": [{"user_id": a, "image_quantity": 6}, {"user_id": b, "image_quantity": 4}]},
    )
    deleted_events: list[dict[str, Any]] = []
    client.app.state.event_bus.subscribe(CacheEvent.TASK_DELETED, deleted_events.append)

    response = client.delete(f"/api/v1/tasks/{task_id}", headers=admin)

    assert response.status_code == 204
    assert client.get(f"/api/v1/tasks/{task_id}", headers=admin).status_code == 404
    assert client.get(f"/api/v1/projects/{project_id}/tasks", headers=admin).json()["items"] == []
    remaining = db_session.scalars(select(TaskAssignment).where(TaskAssignment.task_id == uuid.UUID(task_id))).all()
    assert remaining == []
    assert deleted_events == [{"task_id": task_id, "project_id": project_id}]


def test_task_delete_is_limited_to_managers(client: TestClient, db_session: Session) -> None:
    _, admin = _principal(db_session, "admin", RoleType.ADMIN)
    _, editor = _principal(db_session, "erin", RoleType.EDITOR)
    _, manager = _principal(db_session, "mona", RoleType.MANAGER)
    _, task_id = _setup_task(client, admin)

    assert client.delete(f"/api/v1/tasks/{task_id}", headers=editor).status_code == 403
    assert client.delete(f"/api/v1/tasks/{task_id}", headers=manager).status_code == 204
    assert client.delete(f"/api/v1/tasks/{task_id}", headers=manager).status_code == 404

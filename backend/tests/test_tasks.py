"""
Tests for tasks and comments.

Tests cover:
- Creating and listing tasks through the API
- Team must be linked to the task's project
- Task-scope check: OWNER/ADMIN bypass, project and team membership for others
- Assignee and team changes
- Comment ownership
"""

import logging
import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models
from auth.errors import Banned, DenyCode, EntityNotFound, InsufficientPermission, NotAMember
from services import tasks
from tests.conftest import add_org_member, add_project_member, add_team_member, auth_headers_for, link_team, make_user

logger = logging.getLogger(__name__)


@pytest.fixture
def workspace(test_db: Session, team: models.Team, project: models.Project, member_user: models.User):
    """Team linked to the project, with the team leader also on the project."""
    link_team(test_db, team, project)
    add_project_member(test_db, project, member_user)
    return team, project


@pytest.fixture
def task(test_db: Session, workspace, member_user: models.User) -> models.Task:
    team, project = workspace
    task = models.Task(title="Write docs", project_id=project.id, team_id=team.id, author_id=member_user.id)
    test_db.add(task)
    test_db.commit()
    test_db.refresh(task)
    return task


# ============== Create and list ==============


def test_create_and_list_tasks(
    client: TestClient, organization: models.Organization, workspace, member_user: models.User
):
    team, project = workspace
    headers = auth_headers_for(member_user)

    response = client.post(
        f"/api/organizations/{organization.id}/tasks",
        json={"title": "Ship it", "project_id": project.id, "team_id": team.id, "priority": "high"},
        headers=headers,
    )
    assert response.status_code == 201, response.json()
    assert response.json()["author_id"] == member_user.id

    response = client.get(
        f"/api/organizations/{organization.id}/tasks",
        params={"project_id": project.id, "team_id": team.id, "mine": True},
        headers=headers,
    )
    assert response.status_code == 200, response.json()
    assert [t["title"] for t in response.json()] == ["Ship it"]
    logger.info("✓ Task created and listed")


def test_team_must_be_linked_to_project(
    test_db: Session, organization: models.Organization, team: models.Team, project: models.Project, admin_user: models.User
):
    with pytest.raises(HTTPException) as exc_info:
        tasks.create_task(
            test_db, admin_user, organization.id, {"title": "Orphan", "project_id": project.id, "team_id": team.id}
        )
    assert exc_info.value.status_code == 400


def test_viewer_cannot_create_tasks(
    client: TestClient, test_db: Session, organization: models.Organization, workspace, viewer_user: models.User
):
    team, project = workspace
    add_team_member(test_db, team, viewer_user)
    add_project_member(test_db, project, viewer_user)

    response = client.post(
        f"/api/organizations/{organization.id}/tasks",
        json={"title": "Nope", "project_id": project.id, "team_id": team.id},
        headers=auth_headers_for(viewer_user),
    )

    assert response.status_code == 403
    assert response.json()["code"] == DenyCode.INSUFFICIENT_PERMISSION.value


# ============== Task scope ==============


def test_owner_bypasses_task_scope(
    test_db: Session, organization: models.Organization, workspace, owner_user: models.User
):
    team, project = workspace

    membership = tasks.check_task_scope(test_db, owner_user, organization.id, project.id, team.id)

    assert membership.role == models.OrgRole.OWNER


def test_project_member_outside_team_is_denied(
    test_db: Session, organization: models.Organization, workspace
):
    team, project = workspace
    user = make_user(test_db, "Contributor", "contributor@example.com")
    add_org_member(test_db, organization, user, models.OrgRole.MEMBER)
    add_project_member(test_db, project, user)

    tasks.check_task_scope(test_db, user, organization.id, project.id)
    with pytest.raises(InsufficientPermission):
        tasks.check_task_scope(test_db, user, organization.id, project.id, team.id)


def test_org_banned_user_is_denied(
    test_db: Session, organization: models.Organization, workspace, member_user: models.User
):
    team, project = workspace
    membership = test_db.query(models.OrganizationMember).filter_by(user_id=member_user.id).one()
    membership.status = models.AccessStatus.BANNED
    test_db.commit()

    with pytest.raises(Banned):
        tasks.check_task_scope(test_db, member_user, organization.id, project.id, team.id)


def test_task_of_another_organization_is_not_found(
    test_db: Session, task: models.Task, owner_user: models.User
):
    other = models.Organization(title="Other Org", join_code="other")
    test_db.add(other)
    test_db.commit()
    add_org_member(test_db, other, owner_user, models.OrgRole.OWNER)

    with pytest.raises(EntityNotFound):
        tasks.get_task(test_db, owner_user, other.id, task.id)


# ============== Updates ==============


def test_update_task(
    client: TestClient, organization: models.Organization, task: models.Task, member_user: models.User
):
    response = client.put(
        f"/api/organizations/{organization.id}/tasks/{task.id}",
        json={"is_completed": True},
        headers=auth_headers_for(member_user),
    )

    assert response.status_code == 200, response.json()
    assert response.json()["is_completed"] is True


def test_change_assignee(
    test_db: Session,
    organization: models.Organization,
    task: models.Task,
    member_user: models.User,
    viewer_user: models.User,
    outsider_user: models.User,
):
    updated = tasks.change_assignee(test_db, member_user, organization.id, task.id, viewer_user.id)
    assert updated.assignee_id == viewer_user.id

    with pytest.raises(NotAMember):
        tasks.change_assignee(test_db, member_user, organization.id, task.id, outsider_user.id)


def test_move_to_team(
    test_db: Session, organization: models.Organization, task: models.Task, project: models.Project, admin_user: models.User
):
    other_team = models.Team(organization_id=organization.id, title="Ops")
    test_db.add(other_team)
    test_db.commit()

    with pytest.raises(HTTPException):
        tasks.move_to_team(test_db, admin_user, organization.id, task.id, other_team.id)

    link_team(test_db, other_team, project)
    moved = tasks.move_to_team(test_db, admin_user, organization.id, task.id, other_team.id)
    assert moved.team_id == other_team.id


def test_delete_task(
    client: TestClient, test_db: Session, organization: models.Organization, task: models.Task, member_user: models.User
):
    response = client.delete(
        f"/api/organizations/{organization.id}/tasks/{task.id}", headers=auth_headers_for(member_user)
    )

    assert response.status_code == 200, response.json()
    test_db.expire_all()
    assert test_db.query(models.Task).count() == 0


# ============== Comments ==============


def test_comments(
    client: TestClient, test_db: Session, organization: models.Organization, task: models.Task, member_user: models.User, admin_user: models.User
):
    headers = auth_headers_for(member_user)
    url = f"/api/organizations/{organization.id}/tasks/{task.id}/comments"

    response = client.post(url, json={"content": "Looks good"}, headers=headers)
    assert response.status_code == 201, response.json()
    comment_id = response.json()["id"]

    response = client.get(url, headers=headers)
    assert [c["content"] for c in response.json()] == ["Looks good"]

    with pytest.raises(InsufficientPermission):
        tasks.delete_comment(test_db, admin_user, organization.id, comment_id)

    response = client.delete(f"/api/organizations/{organization.id}/comments/{comment_id}", headers=headers)
    assert response.status_code == 200, response.json()


def test_viewer_cannot_comment(
    client: TestClient, test_db: Session, organization: models.Organization, task: models.Task, viewer_user: models.User
):
    """Reading a task is not enough to write on it."""
    add_team_member(test_db, task.team, viewer_user)
    add_project_member(test_db, task.project, viewer_user)
    url = f"/api/organizations/{organization.id}/tasks/{task.id}/comments"
    headers = auth_headers_for(viewer_user)

    assert client.get(url, headers=headers).status_code == 200

    response = client.post(url, json={"content": "Drive-by"}, headers=headers)
    assert response.status_code == 403
    assert response.json()["code"] == DenyCode.INSUFFICIENT_PERMISSION.value
    test_db.expire_all()
    assert test_db.query(models.Comment).count() == 0

"""
Tests for team membership rules and leadership transfer.

Tests cover:
- Leader exit blocked until leadership is transferred
- Leadership transfer preconditions
- Leader protected from removal and bans
- Team creation, listing by role, and project links
"""

import logging
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import update
from sqlalchemy.orm import Session

import models
from auth.errors import Banned, DenyCode, InsufficientPermission, InvariantViolation, NotAMember
from auth.invariants import transfer_leadership
from services import teams
from tests.conftest import add_org_member, add_team_member, auth_headers_for, make_user

logger = logging.getLogger(__name__)


def leader_ids(db: Session, team_id: str):
    db.expire_all()
    rows = db.query(models.TeamMember).filter_by(team_id=team_id, role=models.TeamRole.LEADER).all()
    return [row.user_id for row in rows]


def member_count(db: Session, team_id: str) -> int:
    db.expire_all()
    return db.query(models.TeamMember).filter_by(team_id=team_id).count()


@pytest.fixture
def teammate(test_db: Session, organization: models.Organization, team: models.Team) -> models.User:
    """An organization MEMBER who is a plain member of the team."""
    user = make_user(test_db, "Teammate", "teammate@example.com")
    add_org_member(test_db, organization, user, models.OrgRole.MEMBER)
    add_team_member(test_db, team, user)
    return user


# ============== Leader exit scenario ==============


def test_leader_exit_then_transfer_then_exit(
    client: TestClient, test_db: Session, team: models.Team, member_user: models.User, teammate: models.User
):
    """The leader cannot leave until leadership is handed over."""
    leader_headers = auth_headers_for(member_user)

    response = client.post(f"/api/teams/{team.id}/exit", headers=leader_headers)
    assert response.status_code == 403
    assert response.json()["code"] == DenyCode.INVARIANT_VIOLATION.value
    assert member_count(test_db, team.id) == 2

    response = client.post(
        f"/api/teams/{team.id}/transfer-leadership",
        json={"user_id": teammate.id},
        headers=leader_headers,
    )
    assert response.status_code == 200, response.json()
    assert response.json()["role"] == "LEADER"
    assert leader_ids(test_db, team.id) == [teammate.id]

    response = client.post(f"/api/teams/{team.id}/exit", headers=leader_headers)
    assert response.status_code == 200, response.json()
    assert response.json() == {"team_deleted": False}
    assert member_count(test_db, team.id) == 1
    logger.info("✓ Former leader left after transferring leadership")


# ============== Transfer preconditions ==============


def test_only_leader_can_transfer(test_db: Session, team: models.Team, teammate: models.User, owner_user: models.User):
    with pytest.raises(InsufficientPermission):
        transfer_leadership(test_db, team.id, teammate.id, teammate.id)
    with pytest.raises(InsufficientPermission):
        transfer_leadership(test_db, team.id, owner_user.id, teammate.id)


def test_transfer_to_self_rejected(test_db: Session, team: models.Team, member_user: models.User):
    with pytest.raises(InvariantViolation):
        transfer_leadership(test_db, team.id, member_user.id, member_user.id)

    assert leader_ids(test_db, team.id) == [member_user.id]


def test_transfer_to_non_member_rejected(
    test_db: Session, team: models.Team, member_user: models.User, viewer_user: models.User
):
    with pytest.raises(NotAMember):
        transfer_leadership(test_db, team.id, member_user.id, viewer_user.id)

    assert leader_ids(test_db, team.id) == [member_user.id]


def test_transfer_to_banned_member_rejected(
    test_db: Session, team: models.Team, member_user: models.User, viewer_user: models.User
):
    add_team_member(test_db, team, viewer_user, status=models.AccessStatus.BANNED)

    with pytest.raises(Banned):
        transfer_leadership(test_db, team.id, member_user.id, viewer_user.id)

    assert leader_ids(test_db, team.id) == [member_user.id]


def test_blank_candidate_rejected(client: TestClient, team: models.Team, member_user: models.User):
    response = client.post(
        f"/api/teams/{team.id}/transfer-leadership",
        json={"user_id": ""},
        headers=auth_headers_for(member_user),
    )

    assert response.status_code == 422


def test_viewer_role_leader_can_transfer(
    client: TestClient, test_db: Session, organization: models.Organization, viewer_user: models.User, teammate: models.User
):
    """Transfer is decided by who holds the role, not by the organization role."""
    design = models.Team(organization_id=organization.id, title="Design")
    test_db.add(design)
    test_db.commit()
    add_team_member(test_db, design, viewer_user, models.TeamRole.LEADER)
    add_team_member(test_db, design, teammate)

    response = client.post(
        f"/api/teams/{design.id}/transfer-leadership",
        json={"user_id": teammate.id},
        headers=auth_headers_for(viewer_user),
    )

    assert response.status_code == 200, response.json()
    assert leader_ids(test_db, design.id) == [teammate.id]


# ============== Leader protection ==============


def test_leader_cannot_be_removed(
    client: TestClient, test_db: Session, team: models.Team, owner_user: models.User, member_user: models.User
):
    response = client.delete(f"/api/teams/{team.id}/members/{member_user.id}", headers=auth_headers_for(owner_user))

    assert response.status_code == 403
    assert response.json()["code"] == DenyCode.INVARIANT_VIOLATION.value
    assert member_count(test_db, team.id) == 1


def test_leader_cannot_be_banned(
    test_db: Session, team: models.Team, admin_user: models.User, member_user: models.User
):
    with pytest.raises(InvariantViolation):
        teams.update_member_status(test_db, admin_user, team.id, member_user.id, models.AccessStatus.BANNED)


def test_leader_removes_and_bans_members(
    test_db: Session, team: models.Team, member_user: models.User, teammate: models.User
):
    banned = teams.update_member_status(test_db, member_user, team.id, teammate.id, models.AccessStatus.BANNED)
    assert banned.status == models.AccessStatus.BANNED

    teams.remove_member(test_db, member_user, team.id, teammate.id)
    assert member_count(test_db, team.id) == 1


def test_plain_member_cannot_remove_others(
    test_db: Session, organization: models.Organization, team: models.Team, teammate: models.User
):
    other = make_user(test_db, "Other", "other@example.com")
    add_org_member(test_db, organization, other, models.OrgRole.MEMBER)
    add_team_member(test_db, team, other)

    with pytest.raises(InsufficientPermission):
        teams.remove_member(test_db, teammate, team.id, other.id)


# ============== Creation and membership ==============


def test_create_team_with_designated_leader(
    client: TestClient, test_db: Session, organization: models.Organization, owner_user: models.User, viewer_user: models.User
):
    response = client.post(
        "/api/teams",
        json={"organization_id": organization.id, "title": "Design", "leader_id": viewer_user.id},
        headers=auth_headers_for(owner_user),
    )

    assert response.status_code == 201, response.json()
    assert leader_ids(test_db, response.json()["id"]) == [viewer_user.id]


def test_create_team_leader_must_be_org_member(
    test_db: Session, organization: models.Organization, owner_user: models.User, outsider_user: models.User
):
    with pytest.raises(NotAMember):
        teams.create_team(test_db, owner_user, organization.id, "Ghosts", leader_id=outsider_user.id)


def test_member_cannot_create_team(test_db: Session, organization: models.Organization, member_user: models.User):
    """The matrix lets MEMBER through the façade; the service still requires OWNER/ADMIN."""
    with pytest.raises(InsufficientPermission):
        teams.create_team(test_db, member_user, organization.id, "Side Project")


def test_duplicate_team_title_conflicts(
    client: TestClient, organization: models.Organization, team: models.Team, owner_user: models.User
):
    response = client.post(
        "/api/teams",
        json={"organization_id": organization.id, "title": "Platform"},
        headers=auth_headers_for(owner_user),
    )

    assert response.status_code == 409


def test_add_member_requires_active_org_membership(
    test_db: Session, team: models.Team, member_user: models.User, outsider_user: models.User
):
    with pytest.raises(NotAMember):
        teams.add_member(test_db, member_user, team.id, outsider_user.id)


def test_add_member_twice_conflicts(
    client: TestClient, team: models.Team, member_user: models.User, viewer_user: models.User
):
    headers = auth_headers_for(member_user)
    first = client.post(f"/api/teams/{team.id}/members", json={"user_id": viewer_user.id}, headers=headers)
    second = client.post(f"/api/teams/{team.id}/members", json={"user_id": viewer_user.id}, headers=headers)

    assert first.status_code == 201, first.json()
    assert second.status_code == 409


def test_list_teams_by_role(
    test_db: Session,
    organization: models.Organization,
    team: models.Team,
    owner_user: models.User,
    member_user: models.User,
    viewer_user: models.User,
):
    other_team = models.Team(organization_id=organization.id, title="Other")
    test_db.add(other_team)
    test_db.commit()
    add_team_member(test_db, other_team, viewer_user, models.TeamRole.LEADER)

    assert {t.title for t in teams.list_teams(test_db, owner_user, organization.id)} == {"Platform", "Other"}
    assert {t.title for t in teams.list_teams(test_db, member_user, organization.id)} == {"Platform"}
    assert {t.title for t in teams.list_teams(test_db, viewer_user, organization.id)} == {"Platform"}


# ============== Project links ==============


def test_link_and_unlink_project(
    client: TestClient, test_db: Session, team: models.Team, project: models.Project, admin_user: models.User
):
    headers = auth_headers_for(admin_user)

    response = client.post(f"/api/teams/{team.id}/project", json={"project_id": project.id}, headers=headers)
    assert response.status_code == 200, response.json()
    assert response.json()["project_id"] == project.id

    response = client.post(f"/api/teams/{team.id}/project", json={"project_id": project.id}, headers=headers)
    assert response.status_code == 409

    response = client.delete(f"/api/teams/{team.id}/project/{project.id}", headers=headers)
    assert response.status_code == 200, response.json()
    assert response.json()["project_id"] is None


def test_team_leader_cannot_link_projects(
    test_db: Session, team: models.Team, project: models.Project, member_user: models.User
):
    with pytest.raises(InsufficientPermission):
        teams.link_to_project(test_db, member_user, team.id, project.id)


def test_last_member_exit_deletes_team(test_db: Session, organization: models.Organization, viewer_user: models.User):
    """A team whose last membership goes away is deleted with it."""
    lone = models.Team(organization_id=organization.id, title="Lone")
    test_db.add(lone)
    test_db.commit()
    add_team_member(test_db, lone, viewer_user)

    assert teams.exit_team(test_db, viewer_user, lone.id) is True
    test_db.expire_all()
    assert test_db.query(models.Team).filter_by(title="Lone").count() == 0


def test_transfer_rereads_leader_row(
    test_db: Session, team: models.Team, member_user: models.User, teammate: models.User
):
    """A demotion written behind the session's back is seen before the swap."""
    leader = test_db.query(models.TeamMember).filter_by(team_id=team.id, user_id=member_user.id).one()
    test_db.execute(
        update(models.TeamMember)
        .where(models.TeamMember.id == leader.id)
        .values(role=models.TeamRole.MEMBER)
        .execution_options(synchronize_session=False)
    )
    assert leader.role == models.TeamRole.LEADER

    with pytest.raises(InsufficientPermission):
        transfer_leadership(test_db, team.id, member_user.id, teammate.id)

    assert leader_ids(test_db, team.id) == []

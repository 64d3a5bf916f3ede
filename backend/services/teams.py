"""
Team business rules: membership management, project links and leadership.

A team is managed by its LEADER or by an OWNER/ADMIN of the owning
organization. Every team keeps exactly one LEADER; see auth.invariants.
"""

import logging
from typing import List, Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session, joinedload

from auth.errors import EntityNotFound, InsufficientPermission, InvariantViolation, NotAMember
from auth.invariants import commit_or_rollback, ensure_not_team_leader, transfer_leadership
from auth.membership import get_project, get_team, is_active, resolve_org_membership, resolve_team_membership
from models import (
    AccessStatus,
    OrgRole,
    ProjectTeam,
    Team,
    TeamMember,
    TeamRole,
    User,
)

logger = logging.getLogger(__name__)

ORG_MANAGING_ROLES = (OrgRole.OWNER, OrgRole.ADMIN)


def _get_team_or_404(db: Session, team_id: str) -> Team:
    team = get_team(db, team_id)
    if team is None:
        raise EntityNotFound(f'Team with id: "{team_id}" does not exist.')
    return team


def _is_org_manager(db: Session, user_id: str, organization_id: str) -> bool:
    membership = resolve_org_membership(db, user_id, organization_id)
    return is_active(membership) and membership.role in ORG_MANAGING_ROLES


def _is_team_leader(db: Session, user_id: str, team_id: str) -> bool:
    membership = resolve_team_membership(db, user_id, team_id)
    return is_active(membership) and membership.role == TeamRole.LEADER


def _require_leader_or_org_manager(db: Session, user: User, team: Team, action: str) -> None:
    if _is_team_leader(db, user.id, team.id) or _is_org_manager(db, user.id, team.organization_id):
        return
    raise InsufficientPermission(
        f"Only the team leader or an organization owner/admin can {action}."
    )


def _require_org_manager(db: Session, user: User, organization_id: str, action: str) -> None:
    if not _is_org_manager(db, user.id, organization_id):
        raise InsufficientPermission(f"Only an organization owner or admin can {action}.")


def _require_active_org_member(db: Session, organization_id: str, user_id: str) -> None:
    membership = resolve_org_membership(db, user_id, organization_id)
    if membership is None:
        raise NotAMember("User is not part of this organization.")
    if not is_active(membership):
        raise InsufficientPermission("User is not active in this organization.")


def _get_target_membership(db: Session, team_id: str, user_id: str) -> TeamMember:
    membership = resolve_team_membership(db, user_id, team_id)
    if membership is None:
        raise NotAMember("User is not a member of this team.")
    return membership


def list_teams(db: Session, user: User, organization_id: str) -> List[Team]:
    """
    Teams of an organization, filtered by the caller's organization role.

    OWNER/ADMIN see every team, MEMBER sees the teams they are active in and
    VIEWER sees the teams they do not belong to (the ones they could be
    invited to).
    """
    membership = resolve_org_membership(db, user.id, organization_id)
    if membership is None:
        raise NotAMember("You are not part of this organization.")

    query = db.query(Team).filter(Team.organization_id == organization_id)
    my_team_ids = db.query(TeamMember.team_id).filter(TeamMember.user_id == user.id)

    if membership.role in ORG_MANAGING_ROLES:
        pass
    elif membership.role == OrgRole.MEMBER:
        active_ids = my_team_ids.filter(TeamMember.status == AccessStatus.ACTIVE)
        query = query.filter(Team.id.in_(active_ids))
    else:
        query = query.filter(~Team.id.in_(my_team_ids))

    return query.order_by(Team.created_at).all()


def get_team_details(db: Session, team_id: str) -> Team:
    team = (
        db.query(Team)
        .options(joinedload(Team.members).joinedload(TeamMember.user))
        .filter(Team.id == team_id)
        .first()
    )
    if team is None:
        raise EntityNotFound(f'Team with id: "{team_id}" does not exist.')
    return team


def create_team(
    db: Session,
    user: User,
    organization_id: str,
    title: str,
    description: Optional[str] = None,
    leader_id: Optional[str] = None,
) -> Team:
    """Create a team with a single LEADER, the creator unless another member is named."""
    _require_org_manager(db, user, organization_id, "create teams")

    existing = (
        db.query(Team)
        .filter(Team.organization_id == organization_id, Team.title == title)
        .first()
    )
    if existing:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A team with this title already exists",
        )

    leader_id = leader_id or user.id
    _require_active_org_member(db, organization_id, leader_id)

    team = Team(organization_id=organization_id, title=title, description=description)
    db.add(team)
    db.flush()

    db.add(
        TeamMember(
            team_id=team.id,
            user_id=leader_id,
            role=TeamRole.LEADER,
            status=AccessStatus.ACTIVE,
        )
    )
    commit_or_rollback(db, "team creation")
    db.refresh(team)

    logger.info(f"Team created: {team.title} (ID: {team.id}) by user {user.id}, leader {leader_id}")
    return team


def update_team(db: Session, user: User, team_id: str, data: dict) -> Team:
    team = _get_team_or_404(db, team_id)
    _require_leader_or_org_manager(db, user, team, "update this team")

    new_title = data.get("title")
    if new_title and new_title != team.title:
        clash = (
            db.query(Team)
            .filter(Team.organization_id == team.organization_id, Team.title == new_title)
            .first()
        )
        if clash:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="A team with this title already exists",
            )

    for field, value in data.items():
        setattr(team, field, value)
    commit_or_rollback(db, "team update")
    db.refresh(team)

    logger.info(f"Team {team_id} updated by user {user.id}: {list(data.keys())}")
    return team


def delete_team(db: Session, user: User, team_id: str) -> None:
    team = _get_team_or_404(db, team_id)
    _require_leader_or_org_manager(db, user, team, "delete this team")

    db.delete(team)
    commit_or_rollback(db, "team deletion")
    logger.info(f"Team {team_id} deleted by user {user.id}")


def link_to_project(db: Session, user: User, team_id: str, project_id: str) -> Team:
    """Attach a team to a project of the same organization. A team has at most one project."""
    team = _get_team_or_404(db, team_id)
    _require_org_manager(db, user, team.organization_id, "link teams to projects")

    project = get_project(db, project_id)
    if project is None or project.organization_id != team.organization_id:
        raise EntityNotFound("Project not found in this organization.")

    if team.project_link is not None:
        if team.project_link.project_id == project_id:
            detail = "The team is already linked to this project"
        else:
            detail = "The team is already linked to another project"
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)

    db.add(ProjectTeam(project_id=project_id, team_id=team_id))
    commit_or_rollback(db, "team link")
    db.refresh(team)

    logger.info(f"Team {team_id} linked to project {project_id} by user {user.id}")
    return team


def unlink_from_project(db: Session, user: User, team_id: str, project_id: str) -> Team:
    team = _get_team_or_404(db, team_id)
    _require_org_manager(db, user, team.organization_id, "unlink teams from projects")

    link = team.project_link
    if link is None or link.project_id != project_id:
        raise EntityNotFound("The team is not linked to this project.")

    db.delete(link)
    commit_or_rollback(db, "team unlink")
    db.refresh(team)

    logger.info(f"Team {team_id} unlinked from project {project_id} by user {user.id}")
    return team


def list_members(db: Session, team_id: str) -> List[TeamMember]:
    _get_team_or_404(db, team_id)
    return (
        db.query(TeamMember)
        .options(joinedload(TeamMember.user))
        .filter(TeamMember.team_id == team_id)
        .order_by(TeamMember.created_at)
        .all()
    )


def add_member(db: Session, user: User, team_id: str, new_user_id: str) -> TeamMember:
    team = _get_team_or_404(db, team_id)
    _require_leader_or_org_manager(db, user, team, "add users")
    _require_active_org_member(db, team.organization_id, new_user_id)

    if resolve_team_membership(db, new_user_id, team_id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User is already a member of this team",
        )

    membership = TeamMember(
        team_id=team_id,
        user_id=new_user_id,
        role=TeamRole.MEMBER,
        status=AccessStatus.ACTIVE,
    )
    db.add(membership)
    commit_or_rollback(db, "team member addition")
    db.refresh(membership)

    logger.info(f"User {new_user_id} added to team {team_id} by user {user.id}")
    return membership


def remove_member(db: Session, user: User, team_id: str, target_user_id: str) -> None:
    team = _get_team_or_404(db, team_id)
    _require_leader_or_org_manager(db, user, team, "remove users")

    membership = _get_target_membership(db, team_id, target_user_id)
    ensure_not_team_leader(membership, "remove")

    db.delete(membership)
    commit_or_rollback(db, "team member removal")
    logger.info(f"User {target_user_id} removed from team {team_id} by user {user.id}")


def update_member_status(
    db: Session, user: User, team_id: str, target_user_id: str, new_status: AccessStatus
) -> TeamMember:
    team = _get_team_or_404(db, team_id)
    _require_leader_or_org_manager(db, user, team, "change member status")

    membership = _get_target_membership(db, team_id, target_user_id)
    ensure_not_team_leader(membership, "change the status of")
    if membership.status == new_status:
        raise InvariantViolation(f"The user already has the status {new_status.value}.")

    membership.status = new_status
    commit_or_rollback(db, "team status change")
    db.refresh(membership)

    logger.info(f"User {target_user_id} in team {team_id} is now {new_status.value}")
    return membership


def transfer_leader(db: Session, user: User, team_id: str, candidate_user_id: str) -> TeamMember:
    _get_team_or_404(db, team_id)
    return transfer_leadership(db, team_id, user.id, candidate_user_id)


def exit_team(db: Session, user: User, team_id: str) -> bool:
    """
    Leave a team. Returns True when the team was deleted because the caller
    was its last member.
    """
    team = _get_team_or_404(db, team_id)
    membership = resolve_team_membership(db, user.id, team_id)
    if membership is None:
        raise NotAMember("You are not a member of this team.")
    if membership.role == TeamRole.LEADER:
        logger.warning(f"Leader {user.id} tried to exit team {team_id}")
        raise InvariantViolation(
            "You cannot leave the team as a leader. Please transfer leadership first."
        )

    db.delete(membership)
    db.flush()

    remaining = db.query(TeamMember).filter(TeamMember.team_id == team_id).count()
    team_deleted = remaining == 0
    if team_deleted:
        db.delete(team)

    commit_or_rollback(db, "team exit")
    logger.info(f"User {user.id} left team {team_id}" + (", team deleted" if team_deleted else ""))
    return team_deleted

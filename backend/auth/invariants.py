"""
Guards for the singleton roles: organization OWNER, team LEADER and
project MANAGER.

Each scope has exactly one holder of its privileged role. The only way to
move that role is a transfer, which demotes the current holder and promotes
the candidate in a single commit. The remaining helpers reject status, role
and removal changes that would leave a scope without its holder or give the
role to a second member.
"""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth.errors import Banned, InsufficientPermission, InvariantViolation, MalformedReference, NotAMember
from auth.membership import (
    first_row,
    resolve_org_membership,
    resolve_project_membership,
    resolve_team_membership,
)
from models import (
    AccessStatus,
    OrganizationMember,
    OrgRole,
    Project,
    ProjectMember,
    ProjectRole,
    Team,
    TeamMember,
    TeamRole,
)

logger = logging.getLogger(__name__)


def commit_or_rollback(db: Session, action: str) -> None:
    """Commit the pending unit of work; roll it back entirely on a store error."""
    try:
        db.commit()
    except SQLAlchemyError:
        logger.exception(f"Store error during {action}, rolling back")
        db.rollback()
        raise


def swap_roles(db: Session, holder, demoted_role, candidate, promoted_role, action: str) -> None:
    """
    Demote the holder and promote the candidate as one transaction.

    Both rows are changed in the same session and flushed by a single
    commit, so no reader ever sees zero or two holders. Callers load both
    rows with lock=True, so a concurrent transfer of the same role waits for
    this commit and then sees the new roles.
    """
    holder.role = demoted_role
    candidate.role = promoted_role
    commit_or_rollback(db, action)
    db.refresh(holder)
    db.refresh(candidate)


def _require_candidate_id(candidate_user_id: Optional[str], label: str) -> None:
    if candidate_user_id is None or not str(candidate_user_id).strip():
        raise MalformedReference(f"The new {label} id must be provided.")


# ============== Organization OWNER ==============


def get_org_owner(db: Session, organization_id: str, lock: bool = False) -> Optional[OrganizationMember]:
    query = db.query(OrganizationMember).filter(
        OrganizationMember.organization_id == organization_id,
        OrganizationMember.role == OrgRole.OWNER,
    )
    return first_row(query, lock)


def transfer_ownership(
    db: Session, organization_id: str, acting_user_id: str, candidate_user_id: str
) -> OrganizationMember:
    """
    Hand the OWNER role of an organization to another active member.

    The previous owner becomes MEMBER. Rejected transfers leave every row
    untouched.

    Raises:
        NotAMember: candidate has no membership in the organization
        Banned: candidate is banned
        InvariantViolation: self-transfer, or candidate already owns the organization
        InsufficientPermission: acting user is not the current owner
    """
    _require_candidate_id(candidate_user_id, "owner")

    candidate = resolve_org_membership(db, candidate_user_id, organization_id, lock=True)
    if candidate is None:
        raise NotAMember("User is not a member of this organization.")
    if candidate.status == AccessStatus.BANNED:
        raise Banned("User is banned. Cannot transfer ownership to banned users.")

    if acting_user_id == candidate_user_id:
        raise InvariantViolation("You can't transfer ownership to yourself.")

    owner = get_org_owner(db, organization_id, lock=True)
    if owner is not None and owner.user_id == candidate_user_id:
        raise InvariantViolation("User is already the owner.")
    if owner is None or owner.user_id != acting_user_id:
        raise InsufficientPermission("You are not the owner of this organization.")

    swap_roles(db, owner, OrgRole.MEMBER, candidate, OrgRole.OWNER, "ownership transfer")
    logger.info(
        f"Ownership of organization {organization_id} transferred from user "
        f"{acting_user_id} to user {candidate_user_id}"
    )
    return candidate


def ensure_org_role_change_allowed(target: OrganizationMember, new_role: OrgRole) -> None:
    """Reject role updates that would create or remove an owner."""
    if target.status == AccessStatus.BANNED:
        raise Banned("Cannot update role of a banned user.")
    if new_role == OrgRole.OWNER:
        raise InvariantViolation("Only the main owner can hold the OWNER role.")
    if new_role == target.role:
        raise InvariantViolation("User already has the requested role.")
    if target.role == OrgRole.OWNER:
        raise InvariantViolation("Cannot change the role of the owner.")


def apply_org_status_change(
    db: Session, target: OrganizationMember, new_status: AccessStatus
) -> OrganizationMember:
    """
    Ban or unban an organization member.

    A ban also drops the member's role to VIEWER in the same write; unbanning
    does not restore the previous role.
    """
    if target.status == new_status:
        raise InvariantViolation(f"The user already has the status {new_status.value}.")
    if target.role == OrgRole.OWNER:
        raise InvariantViolation("The organization owner cannot be banned or have their status changed.")

    if new_status == AccessStatus.BANNED:
        target.role = OrgRole.VIEWER
    target.status = new_status
    commit_or_rollback(db, "organization status change")
    db.refresh(target)
    return target


# ============== Team LEADER ==============


def transfer_leadership(
    db: Session, team_id: str, acting_user_id: str, candidate_user_id: str
) -> TeamMember:
    """
    Hand team leadership from the acting leader to an active team member.

    Raises:
        InsufficientPermission: acting user is not the current leader
        InvariantViolation: candidate is the acting leader
        NotAMember: candidate is not in the team
        Banned: candidate is banned from the team
    """
    _require_candidate_id(candidate_user_id, "leader")

    leader = resolve_team_membership(db, acting_user_id, team_id, lock=True)
    if leader is None or leader.role != TeamRole.LEADER:
        raise InsufficientPermission("Only the current leader can transfer leadership.")
    if candidate_user_id == acting_user_id:
        raise InvariantViolation("User is already the team leader.")

    candidate = resolve_team_membership(db, candidate_user_id, team_id, lock=True)
    if candidate is None:
        raise NotAMember("New leader must be an active team member.")
    if candidate.status == AccessStatus.BANNED:
        raise Banned("New leader must be an active team member.")
    if candidate.role == TeamRole.LEADER:
        raise InvariantViolation("User is already the team leader.")

    swap_roles(db, leader, TeamRole.MEMBER, candidate, TeamRole.LEADER, "leadership transfer")
    logger.info(f"Leadership of team {team_id} transferred from user {acting_user_id} to user {candidate_user_id}")
    return candidate


# ============== Project MANAGER ==============


def transfer_management(
    db: Session, project_id: str, acting_user_id: str, candidate_user_id: str
) -> ProjectMember:
    """
    Hand the MANAGER role from the acting manager to an active project member.

    Raises:
        InsufficientPermission: acting user is not the current manager
        InvariantViolation: candidate is the acting manager
        NotAMember: candidate is not in the project
        Banned: candidate is banned from the project
    """
    _require_candidate_id(candidate_user_id, "manager")

    manager = resolve_project_membership(db, acting_user_id, project_id, lock=True)
    if manager is None or manager.role != ProjectRole.MANAGER:
        raise InsufficientPermission("Only the current manager can transfer project management.")
    if candidate_user_id == acting_user_id:
        raise InvariantViolation("User is already the project manager.")

    candidate = resolve_project_membership(db, candidate_user_id, project_id, lock=True)
    if candidate is None:
        raise NotAMember("New manager must be an active project member.")
    if candidate.status == AccessStatus.BANNED:
        raise Banned("New manager must be an active project member.")
    if candidate.role == ProjectRole.MANAGER:
        raise InvariantViolation("User is already the project manager.")

    swap_roles(db, manager, ProjectRole.MEMBER, candidate, ProjectRole.MANAGER, "manager transfer")
    logger.info(
        f"Management of project {project_id} transferred from user {acting_user_id} to user {candidate_user_id}"
    )
    return candidate


# ============== Removal and status rules ==============


def ensure_not_team_leader(membership: TeamMember, action: str) -> None:
    if membership.role == TeamRole.LEADER:
        logger.warning(f"Rejected attempt to {action} team leader {membership.user_id} of team {membership.team_id}")
        raise InvariantViolation(
            f"Cannot {action} the team leader. Please transfer leadership first."
        )


def ensure_not_project_manager(membership: ProjectMember, action: str) -> None:
    if membership.role == ProjectRole.MANAGER:
        logger.warning(
            f"Rejected attempt to {action} project manager {membership.user_id} of project {membership.project_id}"
        )
        raise InvariantViolation(
            f"Cannot {action} the project manager. Please transfer management first."
        )


def ensure_holds_no_role_in_organization(db: Session, user_id: str, organization_id: str) -> None:
    """
    Reject leaving an organization while leading one of its teams or
    managing one of its projects. Nobody could transfer the role afterwards.
    """
    leaderships = (
        db.query(TeamMember)
        .join(Team, TeamMember.team_id == Team.id)
        .filter(
            Team.organization_id == organization_id,
            TeamMember.user_id == user_id,
            TeamMember.role == TeamRole.LEADER,
        )
        .all()
    )
    for membership in leaderships:
        ensure_not_team_leader(membership, "exit the organization as")

    managements = (
        db.query(ProjectMember)
        .join(Project, ProjectMember.project_id == Project.id)
        .filter(
            Project.organization_id == organization_id,
            ProjectMember.user_id == user_id,
            ProjectMember.role == ProjectRole.MANAGER,
        )
        .all()
    )
    for membership in managements:
        ensure_not_project_manager(membership, "exit the organization as")

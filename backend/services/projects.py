"""
Project business rules.

Project mutations need an ACTIVE project membership; within that, the caller
must be the project's MANAGER or an OWNER/ADMIN of the organization. Every
project keeps exactly one MANAGER.
"""

import logging
from typing import List, Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session, joinedload

from auth.errors import Banned, EntityNotFound, InsufficientPermission, InvariantViolation, NotAMember
from auth.invariants import commit_or_rollback, ensure_not_project_manager, transfer_management
from auth.membership import get_project, is_active, resolve_org_membership, resolve_project_membership
from models import AccessStatus, OrgRole, Project, ProjectMember, ProjectRole, User

logger = logging.getLogger(__name__)

ORG_MANAGING_ROLES = (OrgRole.OWNER, OrgRole.ADMIN)


def _get_project_or_404(db: Session, project_id: str) -> Project:
    project = get_project(db, project_id)
    if project is None:
        raise EntityNotFound("Project not found.")
    return project


def _require_project_manager(db: Session, user: User, project: Project) -> ProjectMember:
    """
    Caller must be an active organization member with an ACTIVE project
    membership, and either the project MANAGER or an organization OWNER/ADMIN.
    """
    org_membership = resolve_org_membership(db, user.id, project.organization_id)
    if not is_active(org_membership):
        raise NotAMember("User is not a member of this organization.")

    project_membership = resolve_project_membership(db, user.id, project.id)
    if project_membership is None:
        raise NotAMember("User is not a participant in this project.")
    if project_membership.status == AccessStatus.BANNED:
        raise Banned("User is banned from this project.")

    if (
        project_membership.role != ProjectRole.MANAGER
        and org_membership.role not in ORG_MANAGING_ROLES
    ):
        raise InsufficientPermission(
            "Only the project manager or an organization owner/admin can perform this action."
        )
    return project_membership


def _get_target_membership(db: Session, project_id: str, user_id: str) -> ProjectMember:
    membership = resolve_project_membership(db, user_id, project_id)
    if membership is None:
        raise NotAMember("The target user is not a participant in this project.")
    return membership


def _ensure_unique_title(db: Session, organization_id: str, title: str) -> None:
    existing = (
        db.query(Project)
        .filter(Project.organization_id == organization_id, Project.title == title)
        .first()
    )
    if existing:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f'Project "{title}" already exists in this organization.',
        )


def list_my_projects(db: Session, user: User, organization_id: str) -> List[Project]:
    """Projects of an organization where the user is an ACTIVE participant."""
    return (
        db.query(Project)
        .join(ProjectMember, ProjectMember.project_id == Project.id)
        .filter(
            Project.organization_id == organization_id,
            ProjectMember.user_id == user.id,
            ProjectMember.status == AccessStatus.ACTIVE,
        )
        .order_by(Project.created_at)
        .all()
    )


def get_project_details(db: Session, project_id: str) -> Project:
    project = (
        db.query(Project)
        .options(joinedload(Project.members).joinedload(ProjectMember.user))
        .filter(Project.id == project_id)
        .first()
    )
    if project is None:
        raise EntityNotFound("Project not found.")
    return project


def create_project(
    db: Session, user: User, organization_id: str, title: str, description: Optional[str] = None
) -> Project:
    """Create a project; the creator becomes its MANAGER."""
    org_membership = resolve_org_membership(db, user.id, organization_id)
    if not is_active(org_membership):
        raise NotAMember("User is not a member of this organization.")
    if org_membership.role not in ORG_MANAGING_ROLES:
        raise InsufficientPermission("Only admins or owners can create projects.")

    _ensure_unique_title(db, organization_id, title)

    project = Project(organization_id=organization_id, title=title, description=description)
    db.add(project)
    db.flush()

    db.add(
        ProjectMember(
            project_id=project.id,
            user_id=user.id,
            role=ProjectRole.MANAGER,
            status=AccessStatus.ACTIVE,
        )
    )
    commit_or_rollback(db, "project creation")
    db.refresh(project)

    logger.info(f"Project created: {project.title} (ID: {project.id}) by user {user.id}")
    return project


def update_project(db: Session, user: User, project_id: str, data: dict) -> Project:
    project = _get_project_or_404(db, project_id)
    _require_project_manager(db, user, project)

    new_title = data.get("title")
    if new_title and new_title != project.title:
        _ensure_unique_title(db, project.organization_id, new_title)

    for field, value in data.items():
        setattr(project, field, value)
    commit_or_rollback(db, "project update")
    db.refresh(project)

    logger.info(f"Project {project_id} updated by user {user.id}: {list(data.keys())}")
    return project


def delete_project(db: Session, user: User, project_id: str) -> None:
    project = _get_project_or_404(db, project_id)
    _require_project_manager(db, user, project)

    db.delete(project)
    commit_or_rollback(db, "project deletion")
    logger.info(f"Project {project_id} deleted by user {user.id}")


def list_members(db: Session, project_id: str) -> List[ProjectMember]:
    _get_project_or_404(db, project_id)
    return (
        db.query(ProjectMember)
        .options(joinedload(ProjectMember.user))
        .filter(ProjectMember.project_id == project_id)
        .order_by(ProjectMember.created_at)
        .all()
    )


def add_member(db: Session, user: User, project_id: str, new_user_id: str) -> ProjectMember:
    project = _get_project_or_404(db, project_id)
    _require_project_manager(db, user, project)

    if resolve_project_membership(db, new_user_id, project_id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User is already part of this project.",
        )

    if not is_active(resolve_org_membership(db, new_user_id, project.organization_id)):
        raise NotAMember("User is not part of this organization.")

    membership = ProjectMember(
        project_id=project_id,
        user_id=new_user_id,
        role=ProjectRole.MEMBER,
        status=AccessStatus.ACTIVE,
    )
    db.add(membership)
    commit_or_rollback(db, "project member addition")
    db.refresh(membership)

    logger.info(f"User {new_user_id} added to project {project_id} by user {user.id}")
    return membership


def update_member_status(
    db: Session, user: User, project_id: str, target_user_id: str, new_status: AccessStatus
) -> ProjectMember:
    """Ban or unban a participant. Org OWNER/ADMIN and the MANAGER are out of reach."""
    project = _get_project_or_404(db, project_id)
    _require_project_manager(db, user, project)

    target_org = resolve_org_membership(db, target_user_id, project.organization_id)
    if target_org is not None and target_org.role in ORG_MANAGING_ROLES:
        raise InvariantViolation("Cannot change the access status of an owner or admin.")

    membership = _get_target_membership(db, project_id, target_user_id)
    ensure_not_project_manager(membership, "change the status of")
    if membership.status == new_status:
        raise InvariantViolation(f"The user already has the status {new_status.value}.")

    membership.status = new_status
    commit_or_rollback(db, "project status change")
    db.refresh(membership)

    logger.info(f"User {target_user_id} in project {project_id} is now {new_status.value}")
    return membership


def remove_member(db: Session, user: User, project_id: str, target_user_id: str) -> None:
    project = _get_project_or_404(db, project_id)
    _require_project_manager(db, user, project)

    membership = _get_target_membership(db, project_id, target_user_id)
    ensure_not_project_manager(membership, "remove")

    db.delete(membership)
    commit_or_rollback(db, "project member removal")
    logger.info(f"User {target_user_id} removed from project {project_id} by user {user.id}")


def transfer_manager(db: Session, user: User, project_id: str, candidate_user_id: str) -> ProjectMember:
    _get_project_or_404(db, project_id)
    return transfer_management(db, project_id, user.id, candidate_user_id)


def exit_project(db: Session, user: User, project_id: str) -> None:
    """Leave a project. OWNER/ADMIN, the MANAGER and banned participants stay."""
    project = _get_project_or_404(db, project_id)

    org_membership = resolve_org_membership(db, user.id, project.organization_id)
    if is_active(org_membership) and org_membership.role in ORG_MANAGING_ROLES:
        raise InvariantViolation("Owners and admins cannot leave the project.")

    membership = resolve_project_membership(db, user.id, project_id)
    if membership is None:
        raise NotAMember("User is not a member of this project.")
    if membership.status == AccessStatus.BANNED:
        raise Banned("Banned users cannot leave the project.")
    if membership.role == ProjectRole.MANAGER:
        logger.warning(f"Manager {user.id} tried to exit project {project_id}")
        raise InvariantViolation(
            "You cannot leave the project as its manager. Please transfer management first."
        )

    db.delete(membership)
    commit_or_rollback(db, "project exit")
    logger.info(f"User {user.id} left project {project_id}")

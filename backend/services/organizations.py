"""
Organization business rules.

Route handlers in main.py have already passed the authorization façade when
these functions run; what is checked here is the part that depends on the
target of the operation (who is being promoted, banned or removed) rather
than on the caller's organization role alone.
"""

import logging
from typing import List, Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session, joinedload

from auth.errors import EntityNotFound, InsufficientPermission, InvariantViolation, NotAMember
from auth.invariants import (
    apply_org_status_change,
    commit_or_rollback,
    ensure_holds_no_role_in_organization,
    ensure_org_role_change_allowed,
    transfer_ownership,
)
from auth.membership import get_organization, resolve_org_membership
from models import AccessStatus, Organization, OrganizationMember, OrgRole, User

logger = logging.getLogger(__name__)

# Roles allowed to see the join code and manage other members
MANAGING_ROLES = (OrgRole.OWNER, OrgRole.ADMIN)


def _get_organization_or_404(db: Session, organization_id: str) -> Organization:
    organization = get_organization(db, organization_id)
    if organization is None:
        raise EntityNotFound(f'Organization with id: "{organization_id}" does not exist.')
    return organization


def _require_managing_member(db: Session, user: User, organization_id: str) -> OrganizationMember:
    membership = resolve_org_membership(db, user.id, organization_id)
    if membership is None:
        raise NotAMember("You are not part of this organization.")
    if membership.status != AccessStatus.ACTIVE or membership.role not in MANAGING_ROLES:
        raise InsufficientPermission("Only the organization owner or an admin can do this.")
    return membership


def _require_owner(db: Session, user: User, organization_id: str) -> OrganizationMember:
    membership = resolve_org_membership(db, user.id, organization_id)
    if membership is None or membership.role != OrgRole.OWNER:
        raise InsufficientPermission("Only the organization owner can do this.")
    return membership


def _get_target_membership(db: Session, organization_id: str, user_id: str) -> OrganizationMember:
    target = resolve_org_membership(db, user_id, organization_id)
    if target is None:
        raise NotAMember("User is not a member of this organization.")
    return target


def list_my_organizations(db: Session, user: User) -> List[Organization]:
    """Organizations where the user holds an ACTIVE membership."""
    return (
        db.query(Organization)
        .join(OrganizationMember, OrganizationMember.organization_id == Organization.id)
        .filter(
            OrganizationMember.user_id == user.id,
            OrganizationMember.status == AccessStatus.ACTIVE,
        )
        .order_by(Organization.created_at)
        .all()
    )


def get_organization_details(db: Session, user: User, organization_id: str) -> dict:
    """
    Return the organization with the caller's role.

    The join code is only included for OWNER and ADMIN members.
    """
    organization = _get_organization_or_404(db, organization_id)
    membership = resolve_org_membership(db, user.id, organization_id)

    can_see_code = (
        membership is not None
        and membership.status == AccessStatus.ACTIVE
        and membership.role in MANAGING_ROLES
    )
    return {
        "id": organization.id,
        "title": organization.title,
        "description": organization.description,
        "join_code": organization.join_code if can_see_code else None,
        "role": membership.role if membership else None,
        "member_count": len(organization.members),
        "created_at": organization.created_at,
        "updated_at": organization.updated_at,
    }


def get_my_membership(db: Session, user: User, organization_id: str) -> OrganizationMember:
    """The caller's own role and status, available even while banned."""
    membership = resolve_org_membership(db, user.id, organization_id)
    if membership is None:
        raise NotAMember("You are not part of this organization.")
    return membership


def list_members(db: Session, user: User, organization_id: str) -> List[OrganizationMember]:
    """All memberships except the owner's, for OWNER/ADMIN callers."""
    _require_managing_member(db, user, organization_id)
    return (
        db.query(OrganizationMember)
        .options(joinedload(OrganizationMember.user))
        .filter(
            OrganizationMember.organization_id == organization_id,
            OrganizationMember.role != OrgRole.OWNER,
        )
        .order_by(OrganizationMember.created_at)
        .all()
    )


def create_organization(
    db: Session, user: User, title: str, description: Optional[str] = None
) -> Organization:
    """Create an organization; the creator becomes its OWNER."""
    existing = db.query(Organization).filter(Organization.title == title).first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="An organization with this title already exists",
        )

    organization = Organization(title=title, description=description)
    db.add(organization)
    db.flush()

    db.add(
        OrganizationMember(
            user_id=user.id,
            organization_id=organization.id,
            role=OrgRole.OWNER,
            status=AccessStatus.ACTIVE,
        )
    )
    commit_or_rollback(db, "organization creation")
    db.refresh(organization)

    logger.info(f"Organization created: {organization.title} (ID: {organization.id}) by user {user.id}")
    return organization


def update_organization(db: Session, user: User, organization_id: str, data: dict) -> Organization:
    organization = _get_organization_or_404(db, organization_id)
    _require_owner(db, user, organization_id)

    new_title = data.get("title")
    if new_title and new_title != organization.title:
        clash = db.query(Organization).filter(Organization.title == new_title).first()
        if clash:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="An organization with this title already exists",
            )

    for field, value in data.items():
        setattr(organization, field, value)
    commit_or_rollback(db, "organization update")
    db.refresh(organization)

    logger.info(f"Organization {organization_id} updated by user {user.id}: {list(data.keys())}")
    return organization


def join_organization(db: Session, user: User, title: str, join_code: str) -> OrganizationMember:
    """Join by title and join code; newcomers start as VIEWER."""
    organization = (
        db.query(Organization)
        .filter(Organization.title == title, Organization.join_code == join_code)
        .first()
    )
    if organization is None:
        raise EntityNotFound("Organization not found or the join code is invalid.")

    if resolve_org_membership(db, user.id, organization.id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="You are already a member of this organization",
        )

    membership = OrganizationMember(
        user_id=user.id,
        organization_id=organization.id,
        role=OrgRole.VIEWER,
        status=AccessStatus.ACTIVE,
    )
    db.add(membership)
    commit_or_rollback(db, "organization join")
    db.refresh(membership)

    logger.info(f"User {user.id} joined organization {organization.id} as VIEWER")
    return membership


def update_member_role(
    db: Session, user: User, organization_id: str, target_user_id: str, new_role: OrgRole
) -> OrganizationMember:
    """Change another member's role. OWNER can be neither granted nor taken here."""
    _require_managing_member(db, user, organization_id)
    target = _get_target_membership(db, organization_id, target_user_id)

    try:
        ensure_org_role_change_allowed(target, new_role)
    except InvariantViolation:
        logger.warning(
            f"User {user.id} rejected changing role of {target_user_id} in organization "
            f"{organization_id} to {new_role.value}"
        )
        raise

    target.role = new_role
    commit_or_rollback(db, "organization role change")
    db.refresh(target)

    logger.info(f"User {target_user_id} in organization {organization_id} is now {new_role.value}")
    return target


def update_member_status(
    db: Session, user: User, organization_id: str, target_user_id: str, new_status: AccessStatus
) -> OrganizationMember:
    """Ban or unban a member; see apply_org_status_change for the role side effect."""
    _require_managing_member(db, user, organization_id)
    target = _get_target_membership(db, organization_id, target_user_id)

    if target.user_id == user.id:
        raise InvariantViolation("You cannot change your own status.")

    target = apply_org_status_change(db, target, new_status)
    logger.info(f"User {target_user_id} in organization {organization_id} is now {new_status.value}")
    return target


def transfer_owner(
    db: Session, user: User, organization_id: str, candidate_user_id: str
) -> OrganizationMember:
    _get_organization_or_404(db, organization_id)
    return transfer_ownership(db, organization_id, user.id, candidate_user_id)


def exit_organization(db: Session, user: User, organization_id: str) -> None:
    """
    Leave an organization. The owner must transfer ownership first, and team
    leaders and project managers must hand over their roles in it.
    """
    membership = resolve_org_membership(db, user.id, organization_id)
    if membership is None:
        raise NotAMember("You are not part of this organization.")
    if membership.role == OrgRole.OWNER:
        logger.warning(f"Owner {user.id} tried to exit organization {organization_id}")
        raise InvariantViolation(
            "The owner cannot leave the organization. Please transfer ownership first."
        )
    ensure_holds_no_role_in_organization(db, user.id, organization_id)

    db.delete(membership)
    commit_or_rollback(db, "organization exit")
    logger.info(f"User {user.id} left organization {organization_id}")


def delete_organization(db: Session, user: User, organization_id: str) -> None:
    organization = _get_organization_or_404(db, organization_id)
    _require_owner(db, user, organization_id)

    db.delete(organization)
    commit_or_rollback(db, "organization deletion")
    logger.info(f"Organization {organization_id} deleted by user {user.id}")

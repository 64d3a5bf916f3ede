"""
Hierarchical access evaluator.

Decides whether a principal may act on the organization, team and/or project
referenced by a request. The checks run in a fixed order (organization, then
team, then project) and stop at the first failure:

- Organization: the caller needs a membership that is not banned.
- Team: the team must exist; the caller needs an active membership in the
  team's organization. Organization OWNER/ADMIN pass without a team
  membership row, everybody else needs a non-banned team membership.
- Project: the project must exist; the caller needs an active membership in
  the project's organization and a non-banned project membership row. There
  is no OWNER/ADMIN exemption at this level.

Once every referenced entity passes, the caller's organization role is
checked against the permission matrix. A request that references no entity
at all is allowed.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from sqlalchemy.orm import Session

from auth.errors import (
    AuthorizationError,
    Banned,
    DenyCode,
    EntityNotFound,
    InsufficientPermission,
    MalformedReference,
    NotAMember,
)
from auth.membership import (
    get_project,
    get_team,
    is_active,
    resolve_org_membership,
    resolve_project_membership,
    resolve_team_membership,
)
from auth.permissions import Permission, missing_permissions
from models import AccessStatus, OrganizationMember, OrgRole, User

logger = logging.getLogger(__name__)

# Organization roles that satisfy team checks without a team membership row
TEAM_BYPASS_ROLES = (OrgRole.OWNER, OrgRole.ADMIN)


@dataclass(frozen=True)
class EntityIds:
    """Entity ids extracted from a request; None means "not referenced"."""

    organization_id: Optional[str] = None
    team_id: Optional[str] = None
    project_id: Optional[str] = None

    def items(self) -> Tuple[Tuple[str, Optional[str]], ...]:
        return (
            ("organizationId", self.organization_id),
            ("teamId", self.team_id),
            ("projectId", self.project_id),
        )

    def is_empty(self) -> bool:
        return all(value is None for _, value in self.items())


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: str
    code: Optional[DenyCode] = None
    role: Optional[OrgRole] = None

    @classmethod
    def allow(cls, reason: str, role: Optional[OrgRole] = None) -> "AccessDecision":
        return cls(allowed=True, reason=reason, role=role)

    @classmethod
    def deny(cls, code: DenyCode, reason: str) -> "AccessDecision":
        return cls(allowed=False, reason=reason, code=code)


def _check_references(entity_ids: EntityIds) -> None:
    for key, value in entity_ids.items():
        if value is None:
            continue
        if not isinstance(value, str) or value.strip() == "":
            raise MalformedReference(f"{key} cannot be an empty value.")


def _check_organization(db: Session, user: User, organization_id: str) -> OrganizationMember:
    membership = resolve_org_membership(db, user.id, organization_id)
    if membership is None:
        raise NotAMember(
            f'User "{user.name}" is not a member of organization with id: "{organization_id}".'
        )
    if membership.status == AccessStatus.BANNED:
        raise Banned(
            f'User "{user.name}" is banned from organization: "{membership.organization.title}".'
        )

    logger.debug(f'User "{user.name}" granted access to organization "{membership.organization.title}"')
    return membership


def _check_team(
    db: Session, user: User, team_id: str, organization_id: Optional[str]
) -> OrganizationMember:
    team = get_team(db, team_id)
    if team is None:
        raise EntityNotFound(f'Team with id: "{team_id}" does not exist.')
    if organization_id is not None and team.organization_id != organization_id:
        raise EntityNotFound(
            f'Team "{team.title}" does not belong to organization with id: "{organization_id}".'
        )

    org_membership = resolve_org_membership(db, user.id, team.organization_id)
    if org_membership is None:
        raise NotAMember(
            f'User "{user.name}" is not a member of organization: "{team.organization.title}".'
        )
    if org_membership.status == AccessStatus.BANNED:
        raise Banned(
            f'User "{user.name}" is banned from organization: "{team.organization.title}".'
        )

    if org_membership.role in TEAM_BYPASS_ROLES:
        logger.debug(
            f'User "{user.name}" is not required to be a member of team "{team.title}" '
            f'due to organization role {org_membership.role.value}'
        )
        return org_membership

    team_membership = resolve_team_membership(db, user.id, team_id)
    if team_membership is None:
        raise NotAMember(f'User "{user.name}" is not a member of team: "{team.title}".')
    if team_membership.status == AccessStatus.BANNED:
        raise Banned(f'User "{user.name}" is banned from team: "{team.title}".')

    logger.debug(f'User "{user.name}" granted access to team "{team.title}"')
    return org_membership


def _check_project(
    db: Session, user: User, project_id: str, organization_id: Optional[str]
) -> OrganizationMember:
    project = get_project(db, project_id)
    if project is None:
        raise EntityNotFound(f'Project with id: "{project_id}" does not exist.')
    if organization_id is not None and project.organization_id != organization_id:
        raise EntityNotFound(
            f'Project "{project.title}" does not belong to organization with id: "{organization_id}".'
        )

    org_membership = resolve_org_membership(db, user.id, project.organization_id)
    if org_membership is None:
        raise NotAMember(
            f'User "{user.name}" is not a member of organization: "{project.organization.title}".'
        )
    if not is_active(org_membership):
        raise Banned(
            f'User "{user.name}" is banned from organization: "{project.organization.title}".'
        )

    # OWNER/ADMIN still need a project membership row here, unlike teams
    project_membership = resolve_project_membership(db, user.id, project_id)
    if project_membership is None:
        raise NotAMember(
            f'User "{user.name}" is not a member of project with id: "{project_id}".'
        )
    if project_membership.status == AccessStatus.BANNED:
        raise Banned(f'User "{user.name}" is banned from project: "{project.title}".')

    logger.debug(f'User "{user.name}" granted access to project "{project.title}"')
    return org_membership


def evaluate_access(
    db: Session,
    user: User,
    entity_ids: EntityIds,
    required_permissions: Iterable[Permission] = (),
) -> AccessDecision:
    """
    Evaluate whether a user may act on the referenced entities.

    Args:
        db: Database session
        user: The authenticated principal
        entity_ids: Organization/team/project ids referenced by the request
        required_permissions: Abstract permissions the operation needs

    Returns:
        AccessDecision; never raises for a deny. Store errors propagate.

    Example:
        >>> decision = evaluate_access(db, user, EntityIds(organization_id=org.id),
        ...                            [Permission.CREATE_TEAM])
        >>> decision.allowed
        True
    """
    required = tuple(required_permissions)
    logger.debug(
        f"Evaluating access for user {user.id}: {dict(entity_ids.items())}, "
        f"required permissions: {[p.value for p in required]}"
    )

    try:
        _check_references(entity_ids)

        if entity_ids.is_empty():
            return AccessDecision.allow("No organization, team or project referenced.")

        org_membership = None
        if entity_ids.organization_id is not None:
            org_membership = _check_organization(db, user, entity_ids.organization_id)
        if entity_ids.team_id is not None:
            org_membership = _check_team(db, user, entity_ids.team_id, entity_ids.organization_id)
        if entity_ids.project_id is not None:
            org_membership = _check_project(
                db, user, entity_ids.project_id, entity_ids.organization_id
            )

        role = org_membership.role
        if missing_permissions(role, required):
            raise InsufficientPermission(
                f'User "{user.name}" with role: "{role.value}" lacks required permissions '
                f'in organization: "{org_membership.organization.title}".'
            )
    except AuthorizationError as exc:
        logger.warning(f"Access denied ({exc.code.value}): {exc.reason}")
        return AccessDecision.deny(exc.code, exc.reason)

    logger.debug(f"Access granted to user {user.id} with organization role {role.value}")
    return AccessDecision.allow("Access granted.", role=role)

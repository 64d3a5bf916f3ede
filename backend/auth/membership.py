"""
Membership resolver.

The only part of the authorization engine that queries the store. Every
function returns the matching row or None and leaves the decision about
what absence means to the caller. Transfers pass lock=True so the rows they
are about to rewrite stay locked (SELECT ... FOR UPDATE) until the commit.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Query, Session

from models import (
    AccessStatus,
    Organization,
    OrganizationMember,
    Project,
    ProjectMember,
    Team,
    TeamMember,
)

logger = logging.getLogger(__name__)


def first_row(query: Query, lock: bool = False):
    """First result of a query; with lock, row-locked and reloaded from the store."""
    if lock:
        query = query.with_for_update().populate_existing()
    return query.first()


def resolve_org_membership(
    db: Session, user_id: str, organization_id: str, lock: bool = False
) -> Optional[OrganizationMember]:
    """Return the user's membership in an organization, or None."""
    logger.debug(f"Resolving organization membership: user={user_id}, organization={organization_id}")
    query = db.query(OrganizationMember).filter(
        OrganizationMember.user_id == user_id,
        OrganizationMember.organization_id == organization_id,
    )
    return first_row(query, lock)


def resolve_team_membership(db: Session, user_id: str, team_id: str, lock: bool = False) -> Optional[TeamMember]:
    """Return the user's membership in a team, or None."""
    logger.debug(f"Resolving team membership: user={user_id}, team={team_id}")
    query = db.query(TeamMember).filter(TeamMember.user_id == user_id, TeamMember.team_id == team_id)
    return first_row(query, lock)


def resolve_project_membership(
    db: Session, user_id: str, project_id: str, lock: bool = False
) -> Optional[ProjectMember]:
    """Return the user's membership in a project, or None."""
    logger.debug(f"Resolving project membership: user={user_id}, project={project_id}")
    query = db.query(ProjectMember).filter(
        ProjectMember.user_id == user_id, ProjectMember.project_id == project_id
    )
    return first_row(query, lock)


def get_organization(db: Session, organization_id: str) -> Optional[Organization]:
    return db.query(Organization).filter(Organization.id == organization_id).first()


def get_team(db: Session, team_id: str) -> Optional[Team]:
    return db.query(Team).filter(Team.id == team_id).first()


def get_project(db: Session, project_id: str) -> Optional[Project]:
    return db.query(Project).filter(Project.id == project_id).first()


def is_active(membership) -> bool:
    """True when a membership row exists and is not banned."""
    return membership is not None and membership.status == AccessStatus.ACTIVE

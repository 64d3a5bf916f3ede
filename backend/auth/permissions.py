"""
Organization role permission matrix.

This module maps every organization role to the explicit set of abstract
permissions it grants. Roles never inherit from each other: each entry lists
everything that role may do. The table is built once at import time and
exposed read-only.
"""

import enum
import logging
from types import MappingProxyType
from typing import FrozenSet, Iterable, Mapping, Optional

from models import OrgRole

logger = logging.getLogger(__name__)


class Permission(str, enum.Enum):
    """Abstract capability tags checked by the route authorization façade."""

    CREATE_ORGANIZATION = "createOrganization"
    UPDATE_ORGANIZATION = "updateOrganization"
    DELETE_ORGANIZATION = "deleteOrganization"
    TRANSFER_OWNERSHIP = "transferOwnership"
    MANAGE_USERS = "manageUsers"
    REMOVE_USER = "removeUser"
    VIEW_RESOURCES = "viewResources"
    EDIT_RESOURCES = "editResources"
    CREATE_PROJECT = "createProject"
    UPDATE_PROJECT = "updateProject"
    DELETE_PROJECT = "deleteProject"
    CREATE_TEAM = "createTeam"
    UPDATE_TEAM = "updateTeam"
    DELETE_TEAM = "deleteTeam"
    MANAGE_TEAM_USERS = "manageTeamUsers"


ROLE_PERMISSIONS: Mapping[OrgRole, FrozenSet[Permission]] = MappingProxyType({
    OrgRole.OWNER: frozenset({
        Permission.UPDATE_ORGANIZATION,
        Permission.DELETE_ORGANIZATION,
        Permission.TRANSFER_OWNERSHIP,
        Permission.MANAGE_USERS,
        Permission.VIEW_RESOURCES,
        Permission.EDIT_RESOURCES,
        Permission.CREATE_PROJECT,
        Permission.UPDATE_PROJECT,
        Permission.DELETE_PROJECT,
        Permission.CREATE_TEAM,
        Permission.UPDATE_TEAM,
        Permission.DELETE_TEAM,
        Permission.REMOVE_USER,
        Permission.MANAGE_TEAM_USERS,
    }),
    OrgRole.ADMIN: frozenset({
        Permission.MANAGE_USERS,
        Permission.VIEW_RESOURCES,
        Permission.EDIT_RESOURCES,
        Permission.CREATE_PROJECT,
        Permission.UPDATE_PROJECT,
        Permission.DELETE_PROJECT,
        Permission.CREATE_TEAM,
        Permission.UPDATE_TEAM,
        Permission.DELETE_TEAM,
        Permission.REMOVE_USER,
        Permission.MANAGE_TEAM_USERS,
    }),
    OrgRole.MEMBER: frozenset({
        Permission.VIEW_RESOURCES,
        Permission.EDIT_RESOURCES,
        Permission.CREATE_TEAM,
        Permission.UPDATE_TEAM,
        Permission.DELETE_TEAM,
        Permission.MANAGE_TEAM_USERS,
    }),
    OrgRole.VIEWER: frozenset({
        Permission.VIEW_RESOURCES,
    }),
})


def permissions_for_role(role: Optional[OrgRole]) -> FrozenSet[Permission]:
    """
    Return the permissions granted by an organization role.

    A role without an entry (or no role at all) grants nothing.

    Example:
        >>> Permission.DELETE_ORGANIZATION in permissions_for_role(OrgRole.ADMIN)
        False
    """
    if role is None:
        return frozenset()
    return ROLE_PERMISSIONS.get(role, frozenset())


def missing_permissions(
    role: Optional[OrgRole], required: Iterable[Permission]
) -> FrozenSet[Permission]:
    """Return the required permissions the role does not grant."""
    granted = permissions_for_role(role)
    missing = frozenset(p for p in required if p not in granted)
    if missing:
        logger.debug(
            f"Role {role.value if role else None} lacks permissions: "
            f"{sorted(p.value for p in missing)}"
        )
    return missing


"""
Tests for the route authorization façade.

Tests cover:
- Id extraction precedence (path, then query, then body) and snake/camel spellings
- Blank ids falling through to later sources
- HTTP behaviour: 401 without a token, 403 with the deny code, handler not run on deny
"""

import logging
from sqlalchemy.orm import Session
from fastapi.testclient import TestClient

import models
from auth.errors import DenyCode
from auth.permissions import Permission
from auth.route_guard import (
    OperationPolicy,
    RequestContext,
    authorize,
    extract_entity_id,
    extract_entity_ids,
)
from tests.conftest import auth_headers_for

logger = logging.getLogger(__name__)


# ============== Extraction ==============


def test_path_wins_over_query_and_body():
    context = RequestContext(
        path={"organization_id": "from-path"},
        query={"organizationId": "from-query"},
        body={"organizationId": "from-body"},
    )
    assert extract_entity_id(context, "organizationId") == "from-path"


def test_query_wins_over_body():
    context = RequestContext(query={"team_id": "from-query"}, body={"teamId": "from-body"})
    assert extract_entity_id(context, "teamId") == "from-query"


def test_body_used_when_nothing_else():
    context = RequestContext(body={"projectId": "from-body"})
    assert extract_entity_id(context, "projectId") == "from-body"


def test_camel_case_preferred_within_a_source():
    context = RequestContext(body={"projectId": "camel", "project_id": "snake"})
    assert extract_entity_id(context, "projectId") == "camel"


def test_blank_value_falls_through_to_next_source():
    context = RequestContext(query={"teamId": ""}, body={"teamId": "from-body"})
    assert extract_entity_id(context, "teamId") == "from-body"


def test_blank_value_kept_when_nothing_else_found():
    context = RequestContext(query={"teamId": ""})
    assert extract_entity_id(context, "teamId") == ""


def test_absent_ids_are_none():
    ids = extract_entity_ids(RequestContext())
    assert ids.is_empty()


def test_authorize_uses_policy_permissions(
    test_db: Session, organization: models.Organization, admin_user: models.User
):
    context = RequestContext(path={"organization_id": organization.id})

    allowed = authorize(test_db, admin_user, OperationPolicy.of(Permission.CREATE_TEAM), context)
    denied = authorize(test_db, admin_user, OperationPolicy.of(Permission.DELETE_ORGANIZATION), context)

    assert allowed.allowed
    assert not denied.allowed
    assert denied.code == DenyCode.INSUFFICIENT_PERMISSION


def test_authorize_blank_body_id_is_malformed(test_db: Session, owner_user: models.User):
    context = RequestContext(body={"organizationId": ""})

    decision = authorize(test_db, owner_user, OperationPolicy.of(), context)

    assert decision.code == DenyCode.MALFORMED_REFERENCE


# ============== HTTP ==============


def test_unauthenticated_request_is_401(client: TestClient, organization: models.Organization):
    response = client.get(f"/api/organizations/{organization.id}")

    assert response.status_code == 401, f"Expected 401, got {response.status_code}: {response.json()}"


def test_non_member_gets_403_with_code(
    client: TestClient, organization: models.Organization, outsider_user: models.User
):
    response = client.get(f"/api/organizations/{organization.id}", headers=auth_headers_for(outsider_user))

    assert response.status_code == 403, f"Expected 403, got {response.status_code}: {response.json()}"
    assert response.json()["code"] == DenyCode.NOT_A_MEMBER.value
    logger.info("✓ Non-member rejected with 403")


def test_missing_team_is_forbidden_at_the_facade(client: TestClient, owner_user: models.User, organization):
    """Façade denials are always 403, even when the entity does not exist."""
    response = client.get("/api/teams/no-such-team", headers=auth_headers_for(owner_user))

    assert response.status_code == 403
    assert response.json()["code"] == DenyCode.ENTITY_NOT_FOUND.value


def test_blank_body_id_is_rejected(
    client: TestClient, organization: models.Organization, owner_user: models.User, test_db: Session
):
    response = client.post(
        "/api/teams",
        json={"organization_id": "", "title": "Blank"},
        headers=auth_headers_for(owner_user),
    )

    assert response.status_code == 403
    assert response.json()["code"] == DenyCode.MALFORMED_REFERENCE.value
    assert test_db.query(models.Team).filter_by(title="Blank").count() == 0


def test_denied_handler_does_not_run(
    client: TestClient, organization: models.Organization, admin_user: models.User, test_db: Session
):
    response = client.delete(f"/api/organizations/{organization.id}", headers=auth_headers_for(admin_user))

    assert response.status_code == 403
    assert response.json()["code"] == DenyCode.INSUFFICIENT_PERMISSION.value
    test_db.expire_all()
    assert test_db.query(models.Organization).filter_by(id=organization.id).count() == 1
    logger.info("✓ Handler body never ran on deny")


def test_viewer_cannot_create_team(
    client: TestClient, organization: models.Organization, viewer_user: models.User
):
    response = client.post(
        "/api/teams",
        json={"organization_id": organization.id, "title": "Nope"},
        headers=auth_headers_for(viewer_user),
    )

    assert response.status_code == 403
    assert response.json()["code"] == DenyCode.INSUFFICIENT_PERMISSION.value


def test_query_parameter_ids_are_checked(
    client: TestClient, organization: models.Organization, project: models.Project, owner_user: models.User
):
    """Listing tasks names the project in the query; the owner has no project row."""
    response = client.get(
        f"/api/organizations/{organization.id}/tasks",
        params={"project_id": project.id},
        headers=auth_headers_for(owner_user),
    )

    assert response.status_code == 403
    assert response.json()["code"] == DenyCode.NOT_A_MEMBER.value


def test_banned_member_can_still_read_own_membership(
    client: TestClient, organization: models.Organization, viewer_user: models.User, test_db: Session
):
    membership = test_db.query(models.OrganizationMember).filter_by(
        user_id=viewer_user.id, organization_id=organization.id
    ).one()
    membership.status = models.AccessStatus.BANNED
    test_db.commit()

    blocked = client.get(f"/api/organizations/{organization.id}", headers=auth_headers_for(viewer_user))
    own = client.get(f"/api/organizations/{organization.id}/me", headers=auth_headers_for(viewer_user))

    assert blocked.status_code == 403
    assert blocked.json()["code"] == DenyCode.BANNED.value
    assert own.status_code == 200
    assert own.json()["status"] == "BANNED"

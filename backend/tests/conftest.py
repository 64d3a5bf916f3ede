"""
Test configuration and fixtures for the Taskflow backend tests.

Provides:
- Test database with SQLite in-memory for speed
- FastAPI test client with database dependency override
- Authentication helpers (JWT token generation)
- Fixtures for users, an organization with one member per role, a team and a project
"""

import os
import sys
import logging
from datetime import timedelta
from typing import Dict, Generator, Optional

# Tables are created per test on the in-memory engine below
os.environ.setdefault("AUTO_CREATE_TABLES", "false")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-pytest-only")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import Base, get_db
from main import app
import models
from auth.security import hash_password, create_access_token

# Configure logging for tests
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

# SQLite in-memory database for fast testing
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a fresh in-memory SQLite database for each test.

    This ensures test isolation and fast execution.
    """
    logger.debug("Creating test database")

    engine = create_engine(
        SQLALCHEMY_TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        logger.debug("Test database cleaned up")


@pytest.fixture(scope="function")
def client(test_db: Session) -> TestClient:
    """
    Create FastAPI test client with database dependency override.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


# ============== Helpers ==============


def make_user(db: Session, name: str, email: str, password: str = "password123") -> models.User:
    user = models.User(
        name=name,
        email=email,
        password_hash=hash_password(password),
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Created user {email} with ID: {user.id}")
    return user


def add_org_member(
    db: Session,
    organization: models.Organization,
    user: models.User,
    role: models.OrgRole = models.OrgRole.VIEWER,
    status: models.AccessStatus = models.AccessStatus.ACTIVE,
) -> models.OrganizationMember:
    membership = models.OrganizationMember(
        organization_id=organization.id, user_id=user.id, role=role, status=status
    )
    db.add(membership)
    db.commit()
    db.refresh(membership)
    return membership


def add_team_member(
    db: Session,
    team: models.Team,
    user: models.User,
    role: models.TeamRole = models.TeamRole.MEMBER,
    status: models.AccessStatus = models.AccessStatus.ACTIVE,
) -> models.TeamMember:
    membership = models.TeamMember(team_id=team.id, user_id=user.id, role=role, status=status)
    db.add(membership)
    db.commit()
    db.refresh(membership)
    return membership


def add_project_member(
    db: Session,
    project: models.Project,
    user: models.User,
    role: models.ProjectRole = models.ProjectRole.MEMBER,
    status: models.AccessStatus = models.AccessStatus.ACTIVE,
) -> models.ProjectMember:
    membership = models.ProjectMember(project_id=project.id, user_id=user.id, role=role, status=status)
    db.add(membership)
    db.commit()
    db.refresh(membership)
    return membership


def link_team(db: Session, team: models.Team, project: models.Project) -> models.ProjectTeam:
    link = models.ProjectTeam(team_id=team.id, project_id=project.id)
    db.add(link)
    db.commit()
    db.refresh(team)
    return link


def create_auth_token(user: models.User, expires_delta: Optional[timedelta] = None) -> str:
    """
    Helper to create JWT access token for a user.

    Args:
        user: User to create token for
        expires_delta: Optional expiration time override

    Returns:
        JWT access token string
    """
    logger.debug(f"Creating auth token for user {user.id}")
    token_data = {
        "sub": str(user.id),
        "email": user.email
    }
    return create_access_token(token_data, expires_delta)


def auth_headers_for(user: models.User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_auth_token(user)}"}


# ============== Users ==============


@pytest.fixture(scope="function")
def owner_user(test_db: Session) -> models.User:
    return make_user(test_db, "Owner User", "owner@example.com")


@pytest.fixture(scope="function")
def admin_user(test_db: Session) -> models.User:
    return make_user(test_db, "Admin User", "admin@example.com")


@pytest.fixture(scope="function")
def member_user(test_db: Session) -> models.User:
    return make_user(test_db, "Member User", "member@example.com")


@pytest.fixture(scope="function")
def viewer_user(test_db: Session) -> models.User:
    return make_user(test_db, "Viewer User", "viewer@example.com")


@pytest.fixture(scope="function")
def outsider_user(test_db: Session) -> models.User:
    """A user with no membership anywhere."""
    return make_user(test_db, "Outsider User", "outsider@example.com")


# ============== Scopes ==============


@pytest.fixture(scope="function")
def organization(
    test_db: Session,
    owner_user: models.User,
    admin_user: models.User,
    member_user: models.User,
    viewer_user: models.User,
) -> models.Organization:
    """
    Create an organization with one ACTIVE member per role.
    """
    logger.debug("Creating test organization")
    org = models.Organization(title="Acme", description="Test organization", join_code="join-acme")
    test_db.add(org)
    test_db.commit()
    test_db.refresh(org)

    add_org_member(test_db, org, owner_user, models.OrgRole.OWNER)
    add_org_member(test_db, org, admin_user, models.OrgRole.ADMIN)
    add_org_member(test_db, org, member_user, models.OrgRole.MEMBER)
    add_org_member(test_db, org, viewer_user, models.OrgRole.VIEWER)

    logger.info(f"Created test organization with ID: {org.id}")
    return org


@pytest.fixture(scope="function")
def team(test_db: Session, organization: models.Organization, member_user: models.User) -> models.Team:
    """
    Create a team led by member_user. Nobody else belongs to it.
    """
    logger.debug("Creating test team")
    team = models.Team(organization_id=organization.id, title="Platform", description="A team for testing")
    test_db.add(team)
    test_db.commit()
    test_db.refresh(team)

    add_team_member(test_db, team, member_user, models.TeamRole.LEADER)

    logger.info(f"Created test team with ID: {team.id}")
    return team


@pytest.fixture(scope="function")
def project(test_db: Session, organization: models.Organization, admin_user: models.User) -> models.Project:
    """
    Create a project managed by admin_user. Nobody else belongs to it.
    """
    logger.debug("Creating test project")
    project = models.Project(organization_id=organization.id, title="Launch", description="A project for testing")
    test_db.add(project)
    test_db.commit()
    test_db.refresh(project)

    add_project_member(test_db, project, admin_user, models.ProjectRole.MANAGER)

    logger.info(f"Created test project with ID: {project.id}")
    return project

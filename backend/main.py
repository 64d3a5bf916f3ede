from fastapi import FastAPI, Depends, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import List, Optional
import logging
import os

from database import get_db, init_db
import models
import schemas
from auth.routes import router as auth_router
from auth.dependencies import get_current_user, require_permissions
from auth.errors import AuthorizationError
from auth.permissions import Permission
from services import organizations, projects, tasks, teams

# Configure logging
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

AUTO_CREATE_TABLES = os.environ.get("AUTO_CREATE_TABLES", "true").lower() == "true"
CORS_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("CORS_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]

app = FastAPI(
    title="Taskflow API",
    description="Organizations, projects, teams and tasks with hierarchical access control",
    version="1.0.0"
)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register authentication router
app.include_router(auth_router)


@app.exception_handler(AuthorizationError)
async def authorization_error_handler(request: Request, exc: AuthorizationError):
    logger.info(f"{request.method} {request.url.path} refused ({exc.code.value}): {exc.reason}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ============== Startup ==============

@app.on_event("startup")
def create_tables():
    """Create tables on startup (development only; disable with AUTO_CREATE_TABLES=false)."""
    if AUTO_CREATE_TABLES:
        logger.info("Creating database tables")
        init_db()


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy"}


# ============== Organizations ==============

@app.get("/api/organizations", response_model=List[schemas.Organization])
def list_organizations(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List organizations where the current user is an active member."""
    logger.debug(f"User {current_user.id} listing organizations")
    return organizations.list_my_organizations(db, current_user)


@app.post("/api/organizations", response_model=schemas.Organization, status_code=status.HTTP_201_CREATED)
def create_organization(
    data: schemas.OrganizationCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Create an organization; the creator becomes its owner."""
    logger.debug(f"User {current_user.id} creating organization: {data.title}")
    return organizations.create_organization(db, current_user, data.title, data.description)


@app.post("/api/organizations/join", response_model=schemas.OrganizationMember)
def join_organization(
    data: schemas.OrganizationJoin,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Join an organization by its title and join code."""
    logger.debug(f"User {current_user.id} joining organization: {data.title}")
    return organizations.join_organization(db, current_user, data.title, data.join_code)


@app.get("/api/organizations/{organization_id}", response_model=schemas.OrganizationDetails)
def get_organization(
    organization_id: str,
    current_user: models.User = Depends(require_permissions(Permission.VIEW_RESOURCES)),
    db: Session = Depends(get_db)
):
    return organizations.get_organization_details(db, current_user, organization_id)


@app.get("/api/organizations/{organization_id}/me", response_model=schemas.OrganizationMember)
def get_my_membership(
    organization_id: str,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Return the caller's role and status, also when banned."""
    return organizations.get_my_membership(db, current_user, organization_id)


@app.put("/api/organizations/{organization_id}", response_model=schemas.Organization)
def update_organization(
    organization_id: str,
    data: schemas.OrganizationUpdate,
    current_user: models.User = Depends(require_permissions(Permission.UPDATE_ORGANIZATION)),
    db: Session = Depends(get_db)
):
    logger.debug(f"User {current_user.id} updating organization {organization_id}")
    return organizations.update_organization(
        db, current_user, organization_id, data.model_dump(exclude_unset=True)
    )


@app.delete("/api/organizations/{organization_id}")
def delete_organization(
    organization_id: str,
    current_user: models.User = Depends(require_permissions(Permission.DELETE_ORGANIZATION)),
    db: Session = Depends(get_db)
):
    logger.debug(f"User {current_user.id} deleting organization {organization_id}")
    organizations.delete_organization(db, current_user, organization_id)
    return {"message": "Organization deleted"}


@app.get("/api/organizations/{organization_id}/members", response_model=List[schemas.OrganizationMember])
def list_organization_members(
    organization_id: str,
    current_user: models.User = Depends(require_permissions(Permission.MANAGE_USERS)),
    db: Session = Depends(get_db)
):
    """List members other than the owner (owner/admin only)."""
    return organizations.list_members(db, current_user, organization_id)


@app.put(
    "/api/organizations/{organization_id}/members/{user_id}/role",
    response_model=schemas.OrganizationMember,
)
def update_organization_member_role(
    organization_id: str,
    user_id: str,
    data: schemas.OrganizationMemberRoleUpdate,
    current_user: models.User = Depends(require_permissions(Permission.MANAGE_USERS)),
    db: Session = Depends(get_db)
):
    logger.debug(f"User {current_user.id} setting role of {user_id} in {organization_id} to {data.role.value}")
    return organizations.update_member_role(db, current_user, organization_id, user_id, data.role)


@app.put(
    "/api/organizations/{organization_id}/members/{user_id}/status",
    response_model=schemas.OrganizationMember,
)
def update_organization_member_status(
    organization_id: str,
    user_id: str,
    data: schemas.MemberStatusUpdate,
    current_user: models.User = Depends(require_permissions(Permission.MANAGE_USERS)),
    db: Session = Depends(get_db)
):
    logger.debug(f"User {current_user.id} setting status of {user_id} in {organization_id} to {data.status.value}")
    return organizations.update_member_status(db, current_user, organization_id, user_id, data.status)


@app.post("/api/organizations/{organization_id}/transfer-ownership", response_model=schemas.OrganizationMember)
def transfer_organization_ownership(
    organization_id: str,
    data: schemas.RoleTransfer,
    current_user: models.User = Depends(require_permissions(Permission.TRANSFER_OWNERSHIP)),
    db: Session = Depends(get_db)
):
    """Hand ownership to another active member; the caller becomes MEMBER."""
    logger.debug(f"User {current_user.id} transferring ownership of {organization_id} to {data.user_id}")
    return organizations.transfer_owner(db, current_user, organization_id, data.user_id)


@app.post("/api/organizations/{organization_id}/exit")
def exit_organization(
    organization_id: str,
    current_user: models.User = Depends(require_permissions(Permission.VIEW_RESOURCES)),
    db: Session = Depends(get_db)
):
    organizations.exit_organization(db, current_user, organization_id)
    return {"message": "You have left the organization"}


# ============== Teams ==============

@app.get("/api/organizations/{organization_id}/teams", response_model=List[schemas.Team])
def list_teams(
    organization_id: str,
    current_user: models.User = Depends(require_permissions(Permission.VIEW_RESOURCES)),
    db: Session = Depends(get_db)
):
    """List teams of an organization visible to the caller's role."""
    logger.debug(f"User {current_user.id} listing teams of organization {organization_id}")
    return teams.list_teams(db, current_user, organization_id)


@app.post("/api/teams", response_model=schemas.Team, status_code=status.HTTP_201_CREATED)
def create_team(
    data: schemas.TeamCreate,
    current_user: models.User = Depends(require_permissions(Permission.CREATE_TEAM)),
    db: Session = Depends(get_db)
):
    """Create a team with a leader (the creator unless leader_id is given)."""
    logger.debug(f"User {current_user.id} creating team: {data.title}")
    return teams.create_team(
        db, current_user, data.organization_id, data.title, data.description, data.leader_id
    )


@app.get("/api/teams/{team_id}", response_model=schemas.TeamWithMembers)
def get_team(
    team_id: str,
    current_user: models.User = Depends(require_permissions(Permission.VIEW_RESOURCES)),
    db: Session = Depends(get_db)
):
    return teams.get_team_details(db, team_id)


@app.put("/api/teams/{team_id}", response_model=schemas.Team)
def update_team(
    team_id: str,
    data: schemas.TeamUpdate,
    current_user: models.User = Depends(require_permissions(Permission.UPDATE_TEAM)),
    db: Session = Depends(get_db)
):
    logger.debug(f"User {current_user.id} updating team {team_id}")
    return teams.update_team(db, current_user, team_id, data.model_dump(exclude_unset=True))


@app.delete("/api/teams/{team_id}")
def delete_team(
    team_id: str,
    current_user: models.User = Depends(require_permissions(Permission.DELETE_TEAM)),
    db: Session = Depends(get_db)
):
    logger.debug(f"User {current_user.id} deleting team {team_id}")
    teams.delete_team(db, current_user, team_id)
    return {"message": "Team deleted"}


@app.post("/api/teams/{team_id}/project", response_model=schemas.Team)
def link_team_to_project(
    team_id: str,
    data: schemas.TeamProjectLink,
    current_user: models.User = Depends(require_permissions(Permission.UPDATE_TEAM)),
    db: Session = Depends(get_db)
):
    logger.debug(f"User {current_user.id} linking team {team_id} to project {data.project_id}")
    return teams.link_to_project(db, current_user, team_id, data.project_id)


@app.delete("/api/teams/{team_id}/project/{project_id}", response_model=schemas.Team)
def unlink_team_from_project(
    team_id: str,
    project_id: str,
    current_user: models.User = Depends(require_permissions(Permission.UPDATE_TEAM)),
    db: Session = Depends(get_db)
):
    logger.debug(f"User {current_user.id} unlinking team {team_id} from project {project_id}")
    return teams.unlink_from_project(db, current_user, team_id, project_id)


@app.get("/api/teams/{team_id}/members", response_model=List[schemas.TeamMember])
def list_team_members(
    team_id: str,
    current_user: models.User = Depends(require_permissions(Permission.VIEW_RESOURCES)),
    db: Session = Depends(get_db)
):
    return teams.list_members(db, team_id)


@app.post("/api/teams/{team_id}/members", response_model=schemas.TeamMember, status_code=status.HTTP_201_CREATED)
def add_team_member(
    team_id: str,
    data: schemas.MemberAdd,
    current_user: models.User = Depends(require_permissions(Permission.MANAGE_TEAM_USERS)),
    db: Session = Depends(get_db)
):
    logger.debug(f"User {current_user.id} adding {data.user_id} to team {team_id}")
    return teams.add_member(db, current_user, team_id, data.user_id)


@app.put("/api/teams/{team_id}/members/{user_id}/status", response_model=schemas.TeamMember)
def update_team_member_status(
    team_id: str,
    user_id: str,
    data: schemas.MemberStatusUpdate,
    current_user: models.User = Depends(require_permissions(Permission.MANAGE_TEAM_USERS)),
    db: Session = Depends(get_db)
):
    return teams.update_member_status(db, current_user, team_id, user_id, data.status)


@app.delete("/api/teams/{team_id}/members/{user_id}")
def remove_team_member(
    team_id: str,
    user_id: str,
    current_user: models.User = Depends(require_permissions(Permission.MANAGE_TEAM_USERS)),
    db: Session = Depends(get_db)
):
    logger.debug(f"User {current_user.id} removing {user_id} from team {team_id}")
    teams.remove_member(db, current_user, team_id, user_id)
    return {"message": "User removed from team"}


@app.post("/api/teams/{team_id}/transfer-leadership", response_model=schemas.TeamMember)
def transfer_team_leadership(
    team_id: str,
    data: schemas.RoleTransfer,
    current_user: models.User = Depends(require_permissions(Permission.VIEW_RESOURCES)),
    db: Session = Depends(get_db)
):
    """Hand leadership to another active team member; the caller becomes MEMBER."""
    logger.debug(f"User {current_user.id} transferring leadership of team {team_id} to {data.user_id}")
    return teams.transfer_leader(db, current_user, team_id, data.user_id)


@app.post("/api/teams/{team_id}/exit", response_model=schemas.TeamExitResult)
def exit_team(
    team_id: str,
    current_user: models.User = Depends(require_permissions(Permission.VIEW_RESOURCES)),
    db: Session = Depends(get_db)
):
    return {"team_deleted": teams.exit_team(db, current_user, team_id)}


# ============== Projects ==============

@app.get("/api/organizations/{organization_id}/projects", response_model=List[schemas.Project])
def list_projects(
    organization_id: str,
    current_user: models.User = Depends(require_permissions(Permission.VIEW_RESOURCES)),
    db: Session = Depends(get_db)
):
    """List projects of an organization the caller participates in."""
    return projects.list_my_projects(db, current_user, organization_id)


@app.post("/api/projects", response_model=schemas.Project, status_code=status.HTTP_201_CREATED)
def create_project(
    data: schemas.ProjectCreate,
    current_user: models.User = Depends(require_permissions(Permission.CREATE_PROJECT)),
    db: Session = Depends(get_db)
):
    """Create a project; the creator becomes its manager."""
    logger.debug(f"User {current_user.id} creating project: {data.title}")
    return projects.create_project(db, current_user, data.organization_id, data.title, data.description)


@app.get("/api/projects/{project_id}", response_model=schemas.ProjectWithMembers)
def get_project(
    project_id: str,
    current_user: models.User = Depends(require_permissions(Permission.VIEW_RESOURCES)),
    db: Session = Depends(get_db)
):
    return projects.get_project_details(db, project_id)


@app.put("/api/projects/{project_id}", response_model=schemas.Project)
def update_project(
    project_id: str,
    data: schemas.ProjectUpdate,
    current_user: models.User = Depends(require_permissions(Permission.UPDATE_PROJECT)),
    db: Session = Depends(get_db)
):
    logger.debug(f"User {current_user.id} updating project {project_id}")
    return projects.update_project(db, current_user, project_id, data.model_dump(exclude_unset=True))


@app.delete("/api/projects/{project_id}")
def delete_project(
    project_id: str,
    current_user: models.User = Depends(require_permissions(Permission.DELETE_PROJECT)),
    db: Session = Depends(get_db)
):
    logger.debug(f"User {current_user.id} deleting project {project_id}")
    projects.delete_project(db, current_user, project_id)
    return {"message": "Project deleted"}


@app.get("/api/projects/{project_id}/members", response_model=List[schemas.ProjectMember])
def list_project_members(
    project_id: str,
    current_user: models.User = Depends(require_permissions(Permission.VIEW_RESOURCES)),
    db: Session = Depends(get_db)
):
    return projects.list_members(db, project_id)


@app.post(
    "/api/projects/{project_id}/members",
    response_model=schemas.ProjectMember,
    status_code=status.HTTP_201_CREATED,
)
def add_project_member(
    project_id: str,
    data: schemas.MemberAdd,
    current_user: models.User = Depends(require_permissions(Permission.MANAGE_USERS)),
    db: Session = Depends(get_db)
):
    logger.debug(f"User {current_user.id} adding {data.user_id} to project {project_id}")
    return projects.add_member(db, current_user, project_id, data.user_id)


@app.put("/api/projects/{project_id}/members/{user_id}/status", response_model=schemas.ProjectMember)
def update_project_member_status(
    project_id: str,
    user_id: str,
    data: schemas.MemberStatusUpdate,
    current_user: models.User = Depends(require_permissions(Permission.MANAGE_USERS)),
    db: Session = Depends(get_db)
):
    return projects.update_member_status(db, current_user, project_id, user_id, data.status)


@app.delete("/api/projects/{project_id}/members/{user_id}")
def remove_project_member(
    project_id: str,
    user_id: str,
    current_user: models.User = Depends(require_permissions(Permission.MANAGE_USERS)),
    db: Session = Depends(get_db)
):
    logger.debug(f"User {current_user.id} removing {user_id} from project {project_id}")
    projects.remove_member(db, current_user, project_id, user_id)
    return {"message": "User removed from project"}


@app.post("/api/projects/{project_id}/transfer-manager", response_model=schemas.ProjectMember)
def transfer_project_manager(
    project_id: str,
    data: schemas.RoleTransfer,
    current_user: models.User = Depends(require_permissions(Permission.VIEW_RESOURCES)),
    db: Session = Depends(get_db)
):
    """Hand the manager role to another active participant; the caller becomes MEMBER."""
    logger.debug(f"User {current_user.id} transferring management of project {project_id} to {data.user_id}")
    return projects.transfer_manager(db, current_user, project_id, data.user_id)


@app.post("/api/projects/{project_id}/exit")
def exit_project(
    project_id: str,
    current_user: models.User = Depends(require_permissions(Permission.VIEW_RESOURCES)),
    db: Session = Depends(get_db)
):
    projects.exit_project(db, current_user, project_id)
    return {"message": "You have left the project"}


# ============== Tasks ==============

@app.get("/api/organizations/{organization_id}/tasks", response_model=List[schemas.Task])
def list_tasks(
    organization_id: str,
    project_id: str = Query(..., min_length=1),
    team_id: Optional[str] = Query(None),
    mine: bool = Query(False, description="Only tasks authored by or assigned to me"),
    current_user: models.User = Depends(require_permissions(Permission.VIEW_RESOURCES)),
    db: Session = Depends(get_db)
):
    """List tasks of a project, optionally narrowed to a team or to my tasks."""
    logger.debug(f"User {current_user.id} listing tasks of project {project_id} (team={team_id}, mine={mine})")
    return tasks.list_tasks(db, current_user, project_id, organization_id, team_id, mine)


@app.post("/api/organizations/{organization_id}/tasks", response_model=schemas.Task, status_code=status.HTTP_201_CREATED)
def create_task(
    organization_id: str,
    data: schemas.TaskCreate,
    current_user: models.User = Depends(require_permissions(Permission.EDIT_RESOURCES)),
    db: Session = Depends(get_db)
):
    logger.debug(f"User {current_user.id} creating task: {data.title}")
    return tasks.create_task(db, current_user, organization_id, data.model_dump())


@app.get("/api/organizations/{organization_id}/tasks/{task_id}", response_model=schemas.Task)
def get_task(
    organization_id: str,
    task_id: str,
    current_user: models.User = Depends(require_permissions(Permission.VIEW_RESOURCES)),
    db: Session = Depends(get_db)
):
    return tasks.get_task(db, current_user, organization_id, task_id)


@app.put("/api/organizations/{organization_id}/tasks/{task_id}", response_model=schemas.Task)
def update_task(
    organization_id: str,
    task_id: str,
    data: schemas.TaskUpdate,
    current_user: models.User = Depends(require_permissions(Permission.EDIT_RESOURCES)),
    db: Session = Depends(get_db)
):
    logger.debug(f"User {current_user.id} updating task {task_id}")
    return tasks.update_task(db, current_user, organization_id, task_id, data.model_dump(exclude_unset=True))


@app.delete("/api/organizations/{organization_id}/tasks/{task_id}")
def delete_task(
    organization_id: str,
    task_id: str,
    current_user: models.User = Depends(require_permissions(Permission.EDIT_RESOURCES)),
    db: Session = Depends(get_db)
):
    logger.debug(f"User {current_user.id} deleting task {task_id}")
    tasks.delete_task(db, current_user, organization_id, task_id)
    return {"message": "Task deleted"}


@app.put("/api/organizations/{organization_id}/tasks/{task_id}/assignee", response_model=schemas.Task)
def change_task_assignee(
    organization_id: str,
    task_id: str,
    data: schemas.TaskAssigneeUpdate,
    current_user: models.User = Depends(require_permissions(Permission.EDIT_RESOURCES)),
    db: Session = Depends(get_db)
):
    return tasks.change_assignee(db, current_user, organization_id, task_id, data.assignee_id)


@app.put("/api/organizations/{organization_id}/tasks/{task_id}/team", response_model=schemas.Task)
def move_task_to_team(
    organization_id: str,
    task_id: str,
    data: schemas.TaskTeamUpdate,
    current_user: models.User = Depends(require_permissions(Permission.EDIT_RESOURCES)),
    db: Session = Depends(get_db)
):
    return tasks.move_to_team(db, current_user, organization_id, task_id, data.team_id)


# ============== Comments ==============

@app.get("/api/organizations/{organization_id}/tasks/{task_id}/comments", response_model=List[schemas.Comment])
def list_comments(
    organization_id: str,
    task_id: str,
    current_user: models.User = Depends(require_permissions(Permission.VIEW_RESOURCES)),
    db: Session = Depends(get_db)
):
    return tasks.list_comments(db, current_user, organization_id, task_id)


@app.post(
    "/api/organizations/{organization_id}/tasks/{task_id}/comments",
    response_model=schemas.Comment,
    status_code=status.HTTP_201_CREATED,
)
def add_comment(
    organization_id: str,
    task_id: str,
    data: schemas.CommentCreate,
    current_user: models.User = Depends(require_permissions(Permission.EDIT_RESOURCES)),
    db: Session = Depends(get_db)
):
    logger.debug(f"User {current_user.id} commenting on task {task_id}")
    return tasks.add_comment(db, current_user, organization_id, task_id, data.content)


@app.delete("/api/organizations/{organization_id}/comments/{comment_id}")
def delete_comment(
    organization_id: str,
    comment_id: str,
    current_user: models.User = Depends(require_permissions(Permission.EDIT_RESOURCES)),
    db: Session = Depends(get_db)
):
    tasks.delete_comment(db, current_user, organization_id, comment_id)
    return {"message": "Comment deleted"}

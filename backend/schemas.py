from pydantic import BaseModel, EmailStr, Field
from datetime import datetime
from typing import Optional, List

from models import AccessStatus, OrgRole, ProjectRole, TaskPriority, TeamRole


# User schemas
class UserSummary(BaseModel):
    id: str
    name: str
    email: EmailStr

    class Config:
        from_attributes = True


# Membership mutation schemas (shared by organizations, teams and projects)
class MemberAdd(BaseModel):
    user_id: str = Field(..., min_length=1)


class MemberStatusUpdate(BaseModel):
    status: AccessStatus


class RoleTransfer(BaseModel):
    """Candidate for an ownership, leadership or management transfer."""
    user_id: str = Field(..., min_length=1)


# Organization schemas
class OrganizationBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None


class OrganizationCreate(OrganizationBase):
    pass


class OrganizationUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None


class OrganizationJoin(BaseModel):
    title: str = Field(..., min_length=1)
    join_code: str = Field(..., min_length=1)


class Organization(OrganizationBase):
    id: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class OrganizationDetails(Organization):
    """Join code is None unless the caller is OWNER or ADMIN."""
    join_code: Optional[str] = None
    role: Optional[OrgRole] = None
    member_count: int = 0


class OrganizationMemberRoleUpdate(BaseModel):
    role: OrgRole


class OrganizationMember(BaseModel):
    user_id: str
    organization_id: str
    role: OrgRole
    status: AccessStatus
    created_at: datetime
    user: Optional[UserSummary] = None

    class Config:
        from_attributes = True


# Team schemas
class TeamBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None


class TeamCreate(TeamBase):
    organization_id: str
    leader_id: Optional[str] = None


class TeamUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None


class TeamProjectLink(BaseModel):
    project_id: str


class Team(TeamBase):
    id: str
    organization_id: str
    project_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class TeamMember(BaseModel):
    user_id: str
    team_id: str
    role: TeamRole
    status: AccessStatus
    created_at: datetime
    user: Optional[UserSummary] = None

    class Config:
        from_attributes = True


class TeamWithMembers(Team):
    members: List[TeamMember] = Field(default_factory=list)


class TeamExitResult(BaseModel):
    team_deleted: bool


# Project schemas
class ProjectBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None


class ProjectCreate(ProjectBase):
    organization_id: str


class ProjectUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None


class Project(ProjectBase):
    id: str
    organization_id: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ProjectMember(BaseModel):
    user_id: str
    project_id: str
    role: ProjectRole
    status: AccessStatus
    created_at: datetime
    user: Optional[UserSummary] = None

    class Config:
        from_attributes = True


class ProjectWithMembers(Project):
    members: List[ProjectMember] = Field(default_factory=list)


# Comment schemas
class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1)


class Comment(BaseModel):
    id: str
    task_id: str
    author_id: Optional[str] = None
    content: str
    created_at: datetime
    author: Optional[UserSummary] = None

    class Config:
        from_attributes = True


# Task schemas
class TaskBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    priority: TaskPriority = TaskPriority.medium
    due_date: Optional[datetime] = None


class TaskCreate(TaskBase):
    project_id: str
    team_id: str
    assignee_id: Optional[str] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    priority: Optional[TaskPriority] = None
    is_completed: Optional[bool] = None
    due_date: Optional[datetime] = None


class TaskAssigneeUpdate(BaseModel):
    assignee_id: Optional[str] = None


class TaskTeamUpdate(BaseModel):
    team_id: str


class Task(TaskBase):
    id: str
    project_id: str
    team_id: str
    author_id: Optional[str] = None
    assignee_id: Optional[str] = None
    is_completed: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

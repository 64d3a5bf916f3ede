"""
Task and comment business rules.

Tasks live in a project and a team linked to that project. Access is
checked against the task's own project and team rather than ids the client
sends, so a caller cannot reach a task by naming a project they belong to.
"""

import logging
from typing import List, Optional

from fastapi import HTTPException, status
from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload

from auth.errors import Banned, EntityNotFound, InsufficientPermission, MalformedReference, NotAMember
from auth.invariants import commit_or_rollback
from auth.membership import (
    get_project,
    get_team,
    is_active,
    resolve_org_membership,
    resolve_project_membership,
    resolve_team_membership,
)
from models import Comment, OrganizationMember, OrgRole, Project, Task, User

logger = logging.getLogger(__name__)

ORG_MANAGING_ROLES = (OrgRole.OWNER, OrgRole.ADMIN)


def check_task_scope(
    db: Session,
    user: User,
    organization_id: str,
    project_id: Optional[str] = None,
    team_id: Optional[str] = None,
) -> OrganizationMember:
    """
    Check that the user may work with tasks in a project and team.

    Organization OWNER/ADMIN pass on organization membership alone. Everyone
    else needs an ACTIVE project membership and, when a team is named, an
    ACTIVE team membership.
    """
    if not organization_id:
        raise MalformedReference("Organization ID is required.")

    org_membership = resolve_org_membership(db, user.id, organization_id)
    if org_membership is None:
        raise NotAMember("You are not a member of this organization.")
    if not is_active(org_membership):
        raise Banned("You are banned in this organization.")

    if org_membership.role in ORG_MANAGING_ROLES:
        return org_membership

    if project_id and not is_active(resolve_project_membership(db, user.id, project_id)):
        raise InsufficientPermission("You do not have access to this project.")
    if team_id and not is_active(resolve_team_membership(db, user.id, team_id)):
        raise InsufficientPermission("You do not have access to this team.")

    return org_membership


def _get_project_in_org(db: Session, project_id: str, organization_id: Optional[str]) -> Project:
    project = get_project(db, project_id)
    if project is None or (organization_id and project.organization_id != organization_id):
        raise EntityNotFound("Project not found in this organization.")
    return project


def _require_team_in_project(db: Session, team_id: str, project_id: str) -> None:
    team = get_team(db, team_id)
    if team is None:
        raise EntityNotFound("Team not found.")
    if team.project_id != project_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="The team is not linked to this project",
        )


def _get_task_for_user(db: Session, user: User, organization_id: str, task_id: str) -> Task:
    task = (
        db.query(Task)
        .options(joinedload(Task.project))
        .filter(Task.id == task_id)
        .first()
    )
    if task is None or task.project.organization_id != organization_id:
        raise EntityNotFound("Task not found.")
    check_task_scope(db, user, organization_id, task.project_id, task.team_id)
    return task


def list_tasks(
    db: Session,
    user: User,
    project_id: str,
    organization_id: Optional[str] = None,
    team_id: Optional[str] = None,
    mine: bool = False,
) -> List[Task]:
    project = _get_project_in_org(db, project_id, organization_id)
    check_task_scope(db, user, project.organization_id, project_id, team_id)

    query = db.query(Task).filter(Task.project_id == project_id)
    if team_id:
        query = query.filter(Task.team_id == team_id)
    if mine:
        query = query.filter(or_(Task.assignee_id == user.id, Task.author_id == user.id))
    return query.order_by(Task.created_at).all()


def create_task(db: Session, user: User, organization_id: str, data: dict) -> Task:
    """
    Create a task. organization_id, project_id and team_id are all required
    and the team must be linked to the project.
    """
    project_id = data.get("project_id")
    team_id = data.get("team_id")
    if not organization_id or not project_id or not team_id:
        raise MalformedReference("Project ID, Team ID, and Organization ID are required.")

    _get_project_in_org(db, project_id, organization_id)
    check_task_scope(db, user, organization_id, project_id, team_id)
    _require_team_in_project(db, team_id, project_id)

    assignee_id = data.get("assignee_id")
    if assignee_id:
        _require_active_org_member(db, organization_id, assignee_id)

    task = Task(**data, author_id=user.id)
    db.add(task)
    commit_or_rollback(db, "task creation")
    db.refresh(task)

    logger.info(f"Task created: {task.title} (ID: {task.id}) in project {project_id} by user {user.id}")
    return task


def get_task(db: Session, user: User, organization_id: str, task_id: str) -> Task:
    return _get_task_for_user(db, user, organization_id, task_id)


def update_task(db: Session, user: User, organization_id: str, task_id: str, data: dict) -> Task:
    task = _get_task_for_user(db, user, organization_id, task_id)

    for field, value in data.items():
        setattr(task, field, value)
    commit_or_rollback(db, "task update")
    db.refresh(task)

    logger.info(f"Task {task_id} updated by user {user.id}: {list(data.keys())}")
    return task


def delete_task(db: Session, user: User, organization_id: str, task_id: str) -> None:
    task = _get_task_for_user(db, user, organization_id, task_id)

    db.delete(task)
    commit_or_rollback(db, "task deletion")
    logger.info(f"Task {task_id} deleted by user {user.id}")


def _require_active_org_member(db: Session, organization_id: str, user_id: str) -> None:
    if not is_active(resolve_org_membership(db, user_id, organization_id)):
        raise NotAMember("The assignee is not an active member of this organization.")


def change_assignee(
    db: Session, user: User, organization_id: str, task_id: str, assignee_id: Optional[str]
) -> Task:
    """Assign a task to an active organization member, or unassign it with None."""
    task = _get_task_for_user(db, user, organization_id, task_id)
    if assignee_id:
        _require_active_org_member(db, organization_id, assignee_id)

    task.assignee_id = assignee_id
    commit_or_rollback(db, "task assignee change")
    db.refresh(task)

    logger.info(f"Task {task_id} assigned to {assignee_id} by user {user.id}")
    return task


def move_to_team(db: Session, user: User, organization_id: str, task_id: str, team_id: str) -> Task:
    task = _get_task_for_user(db, user, organization_id, task_id)
    if team_id == task.team_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="The task already belongs to this team",
        )

    _require_team_in_project(db, team_id, task.project_id)
    check_task_scope(db, user, organization_id, task.project_id, team_id)

    task.team_id = team_id
    commit_or_rollback(db, "task team change")
    db.refresh(task)

    logger.info(f"Task {task_id} moved to team {team_id} by user {user.id}")
    return task


# ============== Comments ==============


def list_comments(db: Session, user: User, organization_id: str, task_id: str) -> List[Comment]:
    _get_task_for_user(db, user, organization_id, task_id)
    return (
        db.query(Comment)
        .options(joinedload(Comment.author))
        .filter(Comment.task_id == task_id)
        .order_by(Comment.created_at)
        .all()
    )


def add_comment(db: Session, user: User, organization_id: str, task_id: str, content: str) -> Comment:
    _get_task_for_user(db, user, organization_id, task_id)

    comment = Comment(task_id=task_id, author_id=user.id, content=content)
    db.add(comment)
    commit_or_rollback(db, "comment creation")
    db.refresh(comment)

    logger.info(f"Comment {comment.id} added to task {task_id} by user {user.id}")
    return comment


def delete_comment(db: Session, user: User, organization_id: str, comment_id: str) -> None:
    """Delete a comment. Only its author may do so."""
    comment = db.query(Comment).filter(Comment.id == comment_id).first()
    if comment is None or comment.task.project.organization_id != organization_id:
        raise EntityNotFound("Comment not found.")
    if comment.author_id != user.id:
        raise InsufficientPermission("You can only delete your own comments.")

    db.delete(comment)
    commit_or_rollback(db, "comment deletion")
    logger.info(f"Comment {comment_id} deleted by user {user.id}")

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from database import Page, paginate
from errors import InvalidState, NotFound, PermissionDenied
from models import JobStatus, Project, ProjectStatus, User, utcnow

logger = logging.getLogger(__name__)


def is_overdue(project: Project, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return (
        project.status == ProjectStatus.ACTIVE
        and project.deadline is not None
        and project.deadline < now
    )


def get_project_for(db: Session, project_id: str, actor: User) -> Project:
    project = db.query(Project).filter(
        Project.id == project_id,
        Project.deleted_at.is_(None)
    ).first()
    if not project:
        raise NotFound("Project not found")
    if not project.has_party(actor):
        raise PermissionDenied("Unauthorized")
    return project


def list_user_projects(db: Session, actor: User, status: Optional[ProjectStatus] = None, page: int = 1) -> Page:
    query = db.query(Project).filter(
        or_(Project.client_id == actor.id, Project.freelancer_id == actor.id),
        Project.deleted_at.is_(None)
    )
    if status:
        query = query.filter(Project.status == status)
    return paginate(query.order_by(Project.created_at.desc()), page)


def _assert_party(project: Project, actor: User):
    if not project.has_party(actor):
        raise PermissionDenied("Unauthorized")


def _assert_client(project: Project, actor: User):
    if project.client_id != actor.id:
        raise PermissionDenied("Only the client can perform this action")


def _complete(project: Project, now: datetime):
    project.status = ProjectStatus.COMPLETED
    project.progress_percentage = 100
    project.completion_date = now
    project.job.status = JobStatus.COMPLETED


def update_progress(db: Session, project: Project, actor: User, percent: int, now: Optional[datetime] = None) -> Project:
    """Set progress, clamped to 0-100. Reaching 100 completes the project."""
    now = now or utcnow()
    _assert_party(project, actor)
    if project.status != ProjectStatus.ACTIVE:
        raise InvalidState("Progress can only be updated on active projects")

    percent = max(0, min(100, int(percent)))
    project.progress_percentage = percent
    if percent == 100:
        _complete(project, now)
    db.commit()
    db.refresh(project)
    if project.status == ProjectStatus.COMPLETED:
        logger.info("Project %s completed through progress update", project.id)
    return project


def mark_completed(db: Session, project: Project, actor: User, now: Optional[datetime] = None) -> Project:
    _assert_client(project, actor)
    if project.status == ProjectStatus.COMPLETED:
        return project
    if project.status != ProjectStatus.ACTIVE:
        raise InvalidState(f"Cannot complete a {project.status.value} project")
    _complete(project, now or utcnow())
    db.commit()
    db.refresh(project)
    logger.info("Project %s marked completed", project.id)
    return project


def cancel_project(db: Session, project: Project, actor: User) -> Project:
    _assert_client(project, actor)
    if project.status != ProjectStatus.ACTIVE:
        raise InvalidState("Only active projects can be cancelled")
    project.status = ProjectStatus.CANCELLED
    project.job.status = JobStatus.CANCELLED
    db.commit()
    db.refresh(project)
    logger.info("Project %s cancelled", project.id)
    return project


def open_dispute(db: Session, project: Project, actor: User) -> Project:
    _assert_party(project, actor)
    if project.status != ProjectStatus.ACTIVE:
        raise InvalidState("Only active projects can be disputed")
    project.status = ProjectStatus.DISPUTED
    db.commit()
    db.refresh(project)
    logger.warning("Project %s disputed by %s", project.id, actor.id)
    return project


def rate_project(db: Session, project: Project, actor: User, rating: int, feedback: Optional[str] = None) -> Project:
    _assert_party(project, actor)
    if project.status != ProjectStatus.COMPLETED:
        raise InvalidState("Only completed projects can be rated")

    side = "client" if actor.id == project.client_id else "freelancer"
    if getattr(project, f"{side}_rating") is not None:
        raise InvalidState("You have already rated this project")
    setattr(project, f"{side}_rating", rating)
    setattr(project, f"{side}_feedback", feedback)
    db.commit()
    db.refresh(project)
    return project

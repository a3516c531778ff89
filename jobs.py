import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import catalog
from accounts import require_role
from config import settings
from database import Page, paginate
from errors import Conflict, InvalidState, NotFound, PermissionDenied, ValidationFailed
from models import (
    BudgetType, ExperienceLevel, Job, JobBookmark, JobSkill, JobStatus, JobView, LocationType, Proposal, ProposalStatus,
    User, UserRole, utcnow
)
import schemas

logger = logging.getLogger(__name__)

LOCKED_STATUSES = (JobStatus.IN_PROGRESS, JobStatus.COMPLETED)
SORT_KEYS = ("latest", "budget_asc", "budget_desc", "deadline")


@dataclass
class JobFilters:
    category_id: Optional[str] = None
    budget_min: Optional[float] = None
    budget_max: Optional[float] = None
    budget_type: Optional[BudgetType] = None
    experience_level: Optional[ExperienceLevel] = None
    location_type: Optional[LocationType] = None
    skills: List[str] = field(default_factory=list)
    sort_by: str = "latest"
    page: int = 1
    per_page: int = settings.DEFAULT_PER_PAGE


def _assert_owner(job: Job, actor: User):
    if job.client_id != actor.id:
        raise PermissionDenied("Unauthorized")


def has_accepted_proposal(db: Session, job: Job) -> bool:
    return db.query(Proposal.id).filter(
        Proposal.job_id == job.id,
        Proposal.status == ProposalStatus.ACCEPTED
    ).first() is not None


def is_accepting_proposals(db: Session, job: Job, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return (
        job.status == JobStatus.PUBLISHED
        and (job.deadline is None or job.deadline > now)
        and not has_accepted_proposal(db, job)
    )


def _published_scope(db: Session, now: datetime):
    return db.query(Job).filter(
        Job.status == JobStatus.PUBLISHED,
        Job.published_at.isnot(None),
        Job.published_at <= now,
        Job.deleted_at.is_(None)
    )


def get_job(db: Session, job_id: str) -> Job:
    job = db.query(Job).filter(Job.id == job_id, Job.deleted_at.is_(None)).first()
    if not job:
        raise NotFound("Job not found")
    return job


def get_visible_job(db: Session, job_id: str, viewer: Optional[User]) -> Job:
    """Published jobs are public; anything else only exists for its owner."""
    job = get_job(db, job_id)
    if job.status != JobStatus.PUBLISHED and (viewer is None or viewer.id != job.client_id):
        raise NotFound("Job not found")
    return job


def _check_deadline(deadline: Optional[datetime], now: datetime):
    if deadline is not None:
        if deadline.tzinfo is not None:
            deadline = deadline.astimezone(timezone.utc).replace(tzinfo=None)
        if deadline <= now:
            raise ValidationFailed({"deadline": ["The deadline must be a date in the future."]})
    return deadline


def create_job(db: Session, actor: User, data: schemas.JobCreate, now: Optional[datetime] = None) -> Job:
    now = now or utcnow()
    require_role(actor, UserRole.CLIENT, "Only clients can post jobs")
    deadline = _check_deadline(data.deadline, now)

    errors = {}
    try:
        catalog.get_category(db, data.category_id)
    except NotFound:
        errors["category_id"] = ["The selected category id is invalid."]
    if data.subcategory_id:
        try:
            catalog.get_category(db, data.subcategory_id)
        except NotFound:
            errors["subcategory_id"] = ["The selected subcategory id is invalid."]
    if errors:
        raise ValidationFailed(errors)

    job = Job(
        client_id=actor.id,
        title=data.title,
        description=data.description,
        requirements=data.requirements,
        budget_type=data.budget_type,
        budget_min=data.budget_min,
        budget_max=data.budget_max,
        currency=(data.currency or settings.DEFAULT_CURRENCY).upper(),
        duration_estimate=data.duration_estimate,
        experience_level=data.experience_level,
        category_id=data.category_id,
        subcategory_id=data.subcategory_id,
        location_type=data.location_type,
        location=data.location,
        is_urgent=data.is_urgent,
        deadline=deadline,
        attachments=data.attachments,
        status=JobStatus.DRAFT,
    )
    job.set_skills(data.skills_required)
    if data.publish_now:
        job.status = JobStatus.PUBLISHED
        job.published_at = now
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info("Job %s created by %s (%s)", job.id, actor.id, job.status.value)
    return job


def _publish(job: Job, now: datetime):
    if job.status in LOCKED_STATUSES:
        raise InvalidState("Cannot publish a job that is in progress or completed")
    job.status = JobStatus.PUBLISHED
    if job.published_at is None:
        job.published_at = now


def publish_job(db: Session, job: Job, actor: User, now: Optional[datetime] = None) -> Job:
    now = now or utcnow()
    _assert_owner(job, actor)
    _publish(job, now)
    db.commit()
    db.refresh(job)
    logger.info("Job %s published", job.id)
    return job


def update_job(db: Session, job: Job, actor: User, data: schemas.JobUpdate, now: Optional[datetime] = None) -> Job:
    now = now or utcnow()
    _assert_owner(job, actor)
    if job.status in LOCKED_STATUSES:
        raise InvalidState("Cannot update job that is in progress or completed")

    changes = data.model_dump(exclude_unset=True)
    status = changes.pop("status", None)
    skills = changes.pop("skills_required", None)
    if "deadline" in changes:
        changes["deadline"] = _check_deadline(changes["deadline"], now)

    budget_min = changes.get("budget_min", job.budget_min)
    budget_max = changes.get("budget_max", job.budget_max)
    location_type = changes.get("location_type") or job.location_type
    location = changes.get("location", job.location)
    errors = {}
    if budget_min is not None and budget_max is not None and budget_max < budget_min:
        errors["budget_max"] = ["The budget max must be greater than or equal to budget min."]
    if location_type != LocationType.REMOTE and not location:
        errors["location"] = ["The location field is required when location type is onsite or hybrid."]
    if errors:
        raise ValidationFailed(errors)

    for name, value in changes.items():
        if value is None and name not in ("requirements", "location", "deadline"):
            continue
        setattr(job, name, value)
    if skills is not None:
        job.set_skills(skills)

    if status == "published":
        _publish(job, now)
    elif status == "draft":
        job.status = JobStatus.DRAFT

    db.commit()
    db.refresh(job)
    return job


def cancel_job(db: Session, job: Job, actor: User, now: Optional[datetime] = None) -> Job:
    now = now or utcnow()
    _assert_owner(job, actor)
    if job.status not in (JobStatus.DRAFT, JobStatus.PUBLISHED):
        raise InvalidState("Only draft or published jobs can be cancelled")
    job.status = JobStatus.CANCELLED
    db.query(Proposal).filter(
        Proposal.job_id == job.id,
        Proposal.status == ProposalStatus.PENDING
    ).update({"status": ProposalStatus.REJECTED, "responded_at": now}, synchronize_session=False)
    db.commit()
    db.refresh(job)
    logger.info("Job %s cancelled", job.id)
    return job


def delete_job(db: Session, job: Job, actor: User, now: Optional[datetime] = None):
    _assert_owner(job, actor)
    if job.status == JobStatus.IN_PROGRESS:
        raise InvalidState("Cannot delete job that is in progress")
    job.deleted_at = now or utcnow()
    db.commit()
    logger.info("Job %s deleted", job.id)


def record_view(db: Session, job: Job, viewer: Optional[User], ip_address: str = None, user_agent: str = None) -> Optional[JobView]:
    """Log a view of ``job``. The owner's own views are not recorded."""
    if viewer is not None and viewer.id == job.client_id:
        return None
    view = JobView(
        job_id=job.id,
        user_id=viewer.id if viewer else None,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.add(view)
    db.commit()
    return view


def view_count(db: Session, job: Job) -> int:
    return db.query(JobView).filter(JobView.job_id == job.id).count()


def pending_proposals(db: Session, job: Job) -> List[Proposal]:
    return db.query(Proposal).filter(
        Proposal.job_id == job.id,
        Proposal.status == ProposalStatus.PENDING,
        Proposal.deleted_at.is_(None)
    ).order_by(Proposal.created_at.desc()).all()


def list_published_jobs(db: Session, filters: JobFilters, now: Optional[datetime] = None) -> Page:
    now = now or utcnow()
    query = _published_scope(db, now)

    if filters.category_id:
        query = query.filter(Job.category_id == filters.category_id)
    if filters.budget_min:
        query = query.filter(Job.budget_min >= filters.budget_min)
    if filters.budget_max:
        query = query.filter(Job.budget_max <= filters.budget_max)
    if filters.budget_type:
        query = query.filter(Job.budget_type == filters.budget_type)
    if filters.experience_level:
        query = query.filter(Job.experience_level == filters.experience_level)
    if filters.location_type:
        query = query.filter(Job.location_type == filters.location_type)
    for skill in filters.skills:
        skill = skill.strip().lower()
        if skill:
            query = query.filter(Job.skills.any(func.lower(JobSkill.skill) == skill))

    if filters.sort_by == "budget_asc":
        query = query.order_by(Job.budget_min.asc())
    elif filters.sort_by == "budget_desc":
        query = query.order_by(Job.budget_max.desc())
    elif filters.sort_by == "deadline":
        query = query.order_by(Job.deadline.is_(None), Job.deadline.asc())
    else:
        query = query.order_by(Job.published_at.desc())
    query = query.order_by(Job.is_featured.desc(), Job.is_urgent.desc())

    return paginate(query, filters.page, filters.per_page)


def search_jobs(db: Session, q: str, page: int = 1, per_page: int = None, now: Optional[datetime] = None) -> Page:
    now = now or utcnow()
    term = q.strip()
    pattern = f"%{term}%"
    query = _published_scope(db, now).filter(
        or_(
            Job.title.ilike(pattern),
            Job.description.ilike(pattern),
            Job.skills.any(func.lower(JobSkill.skill) == term.lower())
        )
    ).order_by(Job.published_at.desc())
    return paginate(query, page, per_page)


def list_category_jobs(db: Session, category_id: str, page: int = 1, now: Optional[datetime] = None) -> Page:
    now = now or utcnow()
    query = _published_scope(db, now).filter(Job.category_id == category_id).order_by(Job.published_at.desc())
    return paginate(query, page)


def list_client_jobs(db: Session, actor: User, page: int = 1) -> Page:
    require_role(actor, UserRole.CLIENT, "Only clients can view their jobs")
    query = db.query(Job).filter(
        Job.client_id == actor.id,
        Job.deleted_at.is_(None)
    ).order_by(Job.created_at.desc())
    return paginate(query, page)


def bookmark_job(db: Session, job: Job, actor: User, now: Optional[datetime] = None) -> JobBookmark:
    existing = db.query(JobBookmark).filter(
        JobBookmark.user_id == actor.id,
        JobBookmark.job_id == job.id
    ).first()
    if existing:
        raise Conflict("Job already bookmarked")
    bookmark = JobBookmark(user_id=actor.id, job_id=job.id, created_at=now or utcnow())
    db.add(bookmark)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("Job already bookmarked")
    db.refresh(bookmark)
    return bookmark


def remove_bookmark(db: Session, job: Job, actor: User):
    removed = db.query(JobBookmark).filter(
        JobBookmark.user_id == actor.id,
        JobBookmark.job_id == job.id
    ).delete(synchronize_session=False)
    if not removed:
        raise NotFound("Bookmark not found")
    db.commit()


def list_bookmarked_jobs(db: Session, actor: User, page: int = 1) -> Page:
    """Bookmarked jobs that still exist, most recently bookmarked first."""
    query = db.query(Job).join(JobBookmark, JobBookmark.job_id == Job.id).filter(
        JobBookmark.user_id == actor.id,
        Job.deleted_at.is_(None)
    ).order_by(JobBookmark.created_at.desc())
    return paginate(query, page)

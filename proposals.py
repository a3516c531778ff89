"""Proposal lifecycle: pending -> accepted | rejected | withdrawn.

Accepting a proposal is the one cross-cutting transaction in the system: the
proposal, its sibling proposals, the job and a new project change together or
not at all.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import jobs
from accounts import require_role
from config import settings
from database import Page, paginate
from errors import Conflict, InvalidState, NotFound, PermissionDenied
from models import (
    Job, JobStatus, Project, ProjectStatus, Proposal, ProposalStatus, User,
    UserRole, utcnow
)
import schemas

logger = logging.getLogger(__name__)


def get_proposal(db: Session, proposal_id: str) -> Proposal:
    proposal = db.query(Proposal).filter(
        Proposal.id == proposal_id,
        Proposal.deleted_at.is_(None)
    ).first()
    if not proposal:
        raise NotFound("Proposal not found")
    return proposal


def get_proposal_for(db: Session, proposal_id: str, actor: User) -> Proposal:
    proposal = get_proposal(db, proposal_id)
    if actor.id not in (proposal.freelancer_id, proposal.job.client_id):
        raise PermissionDenied("Unauthorized")
    return proposal


def submit_proposal(db: Session, actor: User, data: schemas.ProposalCreate, now: Optional[datetime] = None) -> Proposal:
    now = now or utcnow()
    require_role(actor, UserRole.FREELANCER, "Only freelancers can submit proposals")
    job = jobs.get_visible_job(db, data.job_id, actor)

    existing = db.query(Proposal.id).filter(
        Proposal.job_id == job.id,
        Proposal.freelancer_id == actor.id
    ).first()
    if existing:
        raise Conflict("You have already submitted a proposal for this job")
    if not jobs.is_accepting_proposals(db, job, now):
        raise InvalidState("This job is not accepting proposals")

    proposal = Proposal(
        job_id=job.id,
        freelancer_id=actor.id,
        cover_letter=data.cover_letter,
        proposed_amount=data.proposed_amount,
        currency=(data.currency or job.currency or settings.DEFAULT_CURRENCY).upper(),
        delivery_time=data.delivery_time,
        attachments=data.attachments,
        status=ProposalStatus.PENDING,
        submitted_at=now,
    )
    db.add(proposal)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("You have already submitted a proposal for this job")
    db.refresh(proposal)
    logger.info("Proposal %s submitted on job %s by %s", proposal.id, job.id, actor.id)
    return proposal


def update_proposal(db: Session, proposal: Proposal, actor: User, data: schemas.ProposalUpdate,
                    now: Optional[datetime] = None) -> Proposal:
    """Edit amount, delivery time or cover letter while the proposal is still pending."""
    if proposal.freelancer_id != actor.id:
        raise PermissionDenied("Unauthorized")
    if proposal.status != ProposalStatus.PENDING:
        raise InvalidState("Only pending proposals can be updated")

    changes = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
    if not changes:
        return proposal
    changes["updated_at"] = now or utcnow()
    # Conditional on pending so an accept racing this edit wins cleanly
    changed = db.query(Proposal).filter(
        Proposal.id == proposal.id,
        Proposal.status == ProposalStatus.PENDING
    ).update(changes, synchronize_session=False)
    if changed != 1:
        db.rollback()
        raise InvalidState("Only pending proposals can be updated")
    db.commit()
    db.refresh(proposal)
    logger.info("Proposal %s updated", proposal.id)
    return proposal


def accept_proposal(db: Session, proposal: Proposal, actor: User, now: Optional[datetime] = None) -> Project:
    """Accept ``proposal`` and start a project for it.

    The job row is locked where the database supports it, and both the job
    and the proposal transitions are compare-and-set updates. A concurrent
    accept on the same job therefore finds zero matching rows (or trips the
    one-accepted-per-job index) and fails with InvalidState.
    """
    now = now or utcnow()
    try:
        job = db.query(Job).filter(
            Job.id == proposal.job_id,
            Job.deleted_at.is_(None)
        ).with_for_update().populate_existing().first()
        if job is None:
            raise NotFound("Job not found")
        if job.client_id != actor.id:
            raise PermissionDenied("Unauthorized")
        if proposal.status != ProposalStatus.PENDING or not jobs.is_accepting_proposals(db, job, now):
            raise InvalidState("This proposal cannot be accepted.")

        claimed = db.query(Job).filter(
            Job.id == job.id,
            Job.status == JobStatus.PUBLISHED
        ).update({"status": JobStatus.IN_PROGRESS, "updated_at": now}, synchronize_session=False)
        if claimed != 1:
            raise InvalidState("This proposal cannot be accepted.")

        accepted = db.query(Proposal).filter(
            Proposal.id == proposal.id,
            Proposal.status == ProposalStatus.PENDING
        ).update({"status": ProposalStatus.ACCEPTED, "responded_at": now}, synchronize_session=False)
        if accepted != 1:
            raise InvalidState("This proposal cannot be accepted.")

        rejected = db.query(Proposal).filter(
            Proposal.job_id == job.id,
            Proposal.id != proposal.id,
            Proposal.status == ProposalStatus.PENDING
        ).update({"status": ProposalStatus.REJECTED, "responded_at": now}, synchronize_session=False)

        project = Project(
            job_id=job.id,
            proposal_id=proposal.id,
            client_id=job.client_id,
            freelancer_id=proposal.freelancer_id,
            title=job.title,
            description=job.description,
            budget=proposal.proposed_amount,
            currency=proposal.currency,
            status=ProjectStatus.ACTIVE,
            progress_percentage=0,
            start_date=now,
            deadline=now + timedelta(days=proposal.delivery_time),
        )
        db.add(project)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise InvalidState("This proposal cannot be accepted.")
    except Exception:
        db.rollback()
        raise

    db.refresh(proposal)
    db.refresh(job)
    db.refresh(project)
    logger.info(
        "Proposal %s accepted on job %s; project %s started, %d sibling proposals rejected",
        proposal.id, job.id, project.id, rejected
    )
    return project


def _respond(db: Session, proposal: Proposal, status: ProposalStatus, now: datetime) -> Proposal:
    changed = db.query(Proposal).filter(
        Proposal.id == proposal.id,
        Proposal.status == ProposalStatus.PENDING
    ).update({"status": status, "responded_at": now}, synchronize_session=False)
    if changed != 1:
        db.rollback()
        raise InvalidState(f"Only pending proposals can be {status.value}")
    db.commit()
    db.refresh(proposal)
    return proposal


def reject_proposal(db: Session, proposal: Proposal, actor: User, now: Optional[datetime] = None) -> Proposal:
    if proposal.job.client_id != actor.id:
        raise PermissionDenied("Unauthorized")
    if proposal.status != ProposalStatus.PENDING:
        raise InvalidState("Only pending proposals can be rejected")
    proposal = _respond(db, proposal, ProposalStatus.REJECTED, now or utcnow())
    logger.info("Proposal %s rejected", proposal.id)
    return proposal


def withdraw_proposal(db: Session, proposal: Proposal, actor: User, now: Optional[datetime] = None) -> Proposal:
    if proposal.freelancer_id != actor.id:
        raise PermissionDenied("Unauthorized")
    if proposal.status != ProposalStatus.PENDING:
        raise InvalidState("Only pending proposals can be withdrawn")
    proposal = _respond(db, proposal, ProposalStatus.WITHDRAWN, now or utcnow())
    logger.info("Proposal %s withdrawn", proposal.id)
    return proposal


def list_freelancer_proposals(db: Session, actor: User, status: Optional[ProposalStatus] = None, page: int = 1) -> Page:
    require_role(actor, UserRole.FREELANCER, "Only freelancers can view their proposals")
    query = db.query(Proposal).filter(
        Proposal.freelancer_id == actor.id,
        Proposal.deleted_at.is_(None)
    )
    if status:
        query = query.filter(Proposal.status == status)
    return paginate(query.order_by(Proposal.created_at.desc()), page)


def list_job_proposals(db: Session, job: Job, actor: User, page: int = 1) -> Page:
    if job.client_id != actor.id:
        raise PermissionDenied("Unauthorized")
    query = db.query(Proposal).filter(
        Proposal.job_id == job.id,
        Proposal.deleted_at.is_(None)
    ).order_by(Proposal.proposed_amount.asc())
    return paginate(query, page)

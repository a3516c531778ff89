from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import proposals
import schemas
from errors import Conflict, InvalidState, NotFound, PermissionDenied
from models import Base, Job, JobStatus, Project, ProjectStatus, Proposal, ProposalStatus, User

from factories import make_job, make_proposal, make_user

NOW = datetime(2025, 3, 1, 12, 0, 0)


@pytest.fixture
def job_with_bids(db):
    client = make_user(db, "client")
    job = make_job(db, client, budget_min=800, budget_max=1200, now=NOW)
    first = make_proposal(db, make_user(db, "freelancer"), job, amount=1000, delivery_time=30, now=NOW)
    second = make_proposal(db, make_user(db, "freelancer"), job, amount=900, delivery_time=45, now=NOW)
    return client, job, first, second


def test_submit_sets_pending_and_inherits_currency(db):
    job = make_job(db, make_user(db), currency="usd", now=NOW)
    proposal = make_proposal(db, make_user(db, "freelancer"), job, now=NOW)
    assert proposal.status == ProposalStatus.PENDING
    assert proposal.submitted_at == NOW
    assert proposal.currency == "USD"
    assert proposal.formatted_amount == "USD 1,000.00"


def test_only_freelancers_submit(db):
    client = make_user(db)
    job = make_job(db, client)
    with pytest.raises(PermissionDenied):
        make_proposal(db, make_user(db, "client"), job)


def test_second_proposal_on_same_job_is_conflict(db):
    job = make_job(db, make_user(db))
    freelancer = make_user(db, "freelancer")
    make_proposal(db, freelancer, job)
    with pytest.raises(Conflict):
        make_proposal(db, freelancer, job, amount=950)


def test_submit_after_deadline_is_invalid_state(db):
    job = make_job(db, make_user(db), deadline=NOW + timedelta(days=1), now=NOW)
    with pytest.raises(InvalidState):
        make_proposal(db, make_user(db, "freelancer"), job, now=NOW + timedelta(days=2))


def test_submit_to_unpublished_job_is_not_found(db):
    job = make_job(db, make_user(db), publish_now=False)
    with pytest.raises(NotFound):
        make_proposal(db, make_user(db, "freelancer"), job)


def test_accept_creates_project_and_rejects_siblings(db, job_with_bids):
    client, job, first, second = job_with_bids
    accepted_at = NOW + timedelta(hours=3)

    project = proposals.accept_proposal(db, first, client, now=accepted_at)

    assert project.budget == 1000
    assert project.status == ProjectStatus.ACTIVE
    assert project.progress_percentage == 0
    assert project.start_date == accepted_at
    assert project.deadline == project.start_date + timedelta(days=30)
    assert project.proposal_id == first.id
    assert project.job_id == job.id
    assert project.client_id == client.id
    assert project.freelancer_id == first.freelancer_id
    assert project.title == job.title

    db.refresh(second)
    assert first.status == ProposalStatus.ACCEPTED
    assert first.responded_at == accepted_at
    assert second.status == ProposalStatus.REJECTED
    assert job.status == JobStatus.IN_PROGRESS
    assert db.query(Proposal).filter(
        Proposal.job_id == job.id, Proposal.status == ProposalStatus.ACCEPTED
    ).count() == 1


def test_accept_by_non_owner_changes_nothing(db, job_with_bids):
    _, job, first, second = job_with_bids
    with pytest.raises(PermissionDenied):
        proposals.accept_proposal(db, first, make_user(db), now=NOW)

    db.refresh(first)
    db.refresh(job)
    assert first.status == ProposalStatus.PENDING
    assert job.status == JobStatus.PUBLISHED
    assert db.query(Project).count() == 0


def test_second_accept_on_same_job_fails(db, job_with_bids):
    client, job, first, second = job_with_bids
    proposals.accept_proposal(db, first, client, now=NOW)
    with pytest.raises(InvalidState):
        proposals.accept_proposal(db, second, client, now=NOW)
    assert db.query(Project).count() == 1


def test_accept_on_expired_job_is_invalid_state(db):
    client = make_user(db)
    job = make_job(db, client, deadline=NOW + timedelta(days=1), now=NOW)
    proposal = make_proposal(db, make_user(db, "freelancer"), job, now=NOW)
    with pytest.raises(InvalidState):
        proposals.accept_proposal(db, proposal, client, now=NOW + timedelta(days=2))


def test_stale_session_cannot_accept_a_second_proposal(tmp_path):
    """Two sessions race on the same job; only the first accept wins."""
    engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    setup = Session()
    client = make_user(setup, "client")
    job = make_job(setup, client, now=NOW)
    first = make_proposal(setup, make_user(setup, "freelancer"), job, now=NOW)
    second = make_proposal(setup, make_user(setup, "freelancer"), job, now=NOW)
    ids = (client.id, job.id, first.id, second.id)
    setup.close()

    one, two = Session(), Session()
    try:
        client_one, first_one = one.get(User, ids[0]), one.get(Proposal, ids[2])
        client_two, second_two = two.get(User, ids[0]), two.get(Proposal, ids[3])
        # Both sessions have seen the job as published with pending proposals
        assert one.get(Job, ids[1]).status == JobStatus.PUBLISHED
        assert two.get(Job, ids[1]).status == JobStatus.PUBLISHED
        assert second_two.status == ProposalStatus.PENDING

        proposals.accept_proposal(one, first_one, client_one, now=NOW)
        with pytest.raises(InvalidState):
            proposals.accept_proposal(two, second_two, client_two, now=NOW)
    finally:
        one.close()
        two.close()

    check = Session()
    try:
        assert check.query(Project).count() == 1
        statuses = {p.id: p.status for p in check.query(Proposal).all()}
        assert statuses == {ids[2]: ProposalStatus.ACCEPTED, ids[3]: ProposalStatus.REJECTED}
    finally:
        check.close()
        engine.dispose()


def test_reject_and_withdraw_only_from_pending(db, job_with_bids):
    client, job, first, second = job_with_bids

    rejected = proposals.reject_proposal(db, first, client, now=NOW)
    assert rejected.status == ProposalStatus.REJECTED
    assert rejected.responded_at == NOW
    with pytest.raises(InvalidState):
        proposals.reject_proposal(db, first, client)
    with pytest.raises(InvalidState):
        proposals.withdraw_proposal(db, first, first.freelancer)

    with pytest.raises(PermissionDenied):
        proposals.withdraw_proposal(db, second, first.freelancer)
    with pytest.raises(PermissionDenied):
        proposals.reject_proposal(db, second, second.freelancer)

    withdrawn = proposals.withdraw_proposal(db, second, second.freelancer)
    assert withdrawn.status == ProposalStatus.WITHDRAWN
    with pytest.raises(InvalidState):
        proposals.accept_proposal(db, second, client)


def test_proposal_visibility(db, job_with_bids):
    client, job, first, second = job_with_bids
    assert proposals.get_proposal_for(db, first.id, client).id == first.id
    assert proposals.get_proposal_for(db, first.id, first.freelancer).id == first.id
    with pytest.raises(PermissionDenied):
        proposals.get_proposal_for(db, first.id, second.freelancer)
    with pytest.raises(NotFound):
        proposals.get_proposal_for(db, "missing", client)


def test_listings(db, job_with_bids):
    client, job, first, second = job_with_bids

    page = proposals.list_job_proposals(db, job, client)
    assert [p.id for p in page.items] == [second.id, first.id]
    with pytest.raises(PermissionDenied):
        proposals.list_job_proposals(db, job, first.freelancer)

    mine = proposals.list_freelancer_proposals(db, first.freelancer)
    assert [p.id for p in mine.items] == [first.id]
    assert proposals.list_freelancer_proposals(db, first.freelancer, ProposalStatus.ACCEPTED).total == 0
    with pytest.raises(PermissionDenied):
        proposals.list_freelancer_proposals(db, client)


def test_failed_project_insert_rolls_back_every_status_change(db, job_with_bids):
    client, job, first, second = job_with_bids
    # A stray project already claims this proposal, so the new one violates the unique key
    db.add(Project(
        job_id=job.id, proposal_id=first.id, client_id=client.id, freelancer_id=first.freelancer_id,
        title="Stray", description="Stray project", budget=1, currency="BDT",
    ))
    db.commit()

    with pytest.raises(InvalidState):
        proposals.accept_proposal(db, first, client, now=NOW)

    db.refresh(first)
    db.refresh(second)
    db.refresh(job)
    assert first.status == ProposalStatus.PENDING
    assert first.responded_at is None
    assert second.status == ProposalStatus.PENDING
    assert job.status == JobStatus.PUBLISHED
    assert db.query(Project).count() == 1


def test_freelancer_edits_pending_proposal(db, job_with_bids):
    client, job, first, second = job_with_bids
    freelancer = db.get(User, first.freelancer_id)

    updated = proposals.update_proposal(
        db, first, freelancer,
        schemas.ProposalUpdate(proposed_amount=950, delivery_time=20),
        now=NOW + timedelta(hours=1)
    )

    assert updated.proposed_amount == 950
    assert updated.delivery_time == 20
    assert updated.cover_letter == "I have built several systems like this one."
    assert updated.status == ProposalStatus.PENDING
    assert updated.updated_at == NOW + timedelta(hours=1)


def test_only_the_author_edits_a_proposal(db, job_with_bids):
    client, job, first, second = job_with_bids
    with pytest.raises(PermissionDenied):
        proposals.update_proposal(db, first, client, schemas.ProposalUpdate(proposed_amount=1))
    with pytest.raises(PermissionDenied):
        proposals.update_proposal(db, first, db.get(User, second.freelancer_id), schemas.ProposalUpdate(delivery_time=2))
    db.refresh(first)
    assert first.proposed_amount == 1000


def test_answered_proposals_cannot_be_edited(db, job_with_bids):
    client, job, first, second = job_with_bids
    proposals.accept_proposal(db, first, client, now=NOW)
    for proposal in (first, second):
        with pytest.raises(InvalidState):
            proposals.update_proposal(
                db, proposal, db.get(User, proposal.freelancer_id),
                schemas.ProposalUpdate(cover_letter="A much better cover letter.")
            )


def test_proposal_edit_rules():
    with pytest.raises(ValueError):
        schemas.ProposalUpdate(proposed_amount=0)
    with pytest.raises(ValueError):
        schemas.ProposalUpdate(delivery_time=0)
    with pytest.raises(ValueError):
        schemas.ProposalUpdate(cover_letter="short")

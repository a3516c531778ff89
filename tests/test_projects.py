from datetime import datetime, timedelta

import pytest

import projects
from errors import InvalidState, NotFound, PermissionDenied
from models import JobStatus, ProjectStatus

from factories import make_project, make_user

NOW = datetime(2025, 3, 1, 12, 0, 0)


@pytest.fixture
def engagement(db):
    return make_project(db, now=NOW)


def test_progress_is_clamped(db, engagement):
    project, client, freelancer = engagement

    projects.update_progress(db, project, freelancer, -20, now=NOW)
    assert project.progress_percentage == 0
    projects.update_progress(db, project, freelancer, 45, now=NOW)
    assert project.progress_percentage == 45
    assert project.status == ProjectStatus.ACTIVE
    assert project.completion_date is None


def test_progress_over_100_completes_project(db, engagement):
    project, client, freelancer = engagement
    done_at = NOW + timedelta(days=10)

    projects.update_progress(db, project, freelancer, 150, now=done_at)

    assert project.progress_percentage == 100
    assert project.status == ProjectStatus.COMPLETED
    assert project.completion_date == done_at
    assert project.job.status == JobStatus.COMPLETED


def test_completed_project_is_not_reopened_by_progress(db, engagement):
    project, client, freelancer = engagement
    projects.update_progress(db, project, freelancer, 100, now=NOW)
    with pytest.raises(InvalidState):
        projects.update_progress(db, project, freelancer, 40, now=NOW)
    assert project.status == ProjectStatus.COMPLETED
    assert project.progress_percentage == 100


def test_progress_requires_a_party(db, engagement):
    project, _, _ = engagement
    with pytest.raises(PermissionDenied):
        projects.update_progress(db, project, make_user(db, "freelancer"), 10)


def test_mark_completed_is_idempotent(db, engagement):
    project, client, _ = engagement
    first = NOW + timedelta(days=3)

    projects.mark_completed(db, project, client, now=first)
    assert project.status == ProjectStatus.COMPLETED
    assert project.progress_percentage == 100
    assert project.completion_date == first

    projects.mark_completed(db, project, client, now=first + timedelta(days=1))
    assert project.status == ProjectStatus.COMPLETED
    assert project.completion_date == first


def test_mark_completed_is_client_only(db, engagement):
    project, _, freelancer = engagement
    with pytest.raises(PermissionDenied):
        projects.mark_completed(db, project, freelancer)


def test_cancel_and_dispute_are_terminal(db, engagement):
    project, client, freelancer = engagement
    projects.cancel_project(db, project, client)
    assert project.status == ProjectStatus.CANCELLED
    assert project.job.status == JobStatus.CANCELLED

    with pytest.raises(InvalidState):
        projects.mark_completed(db, project, client)
    with pytest.raises(InvalidState):
        projects.open_dispute(db, project, freelancer)


def test_either_party_can_dispute(db):
    project, client, freelancer = make_project(db, now=NOW)
    projects.open_dispute(db, project, freelancer)
    assert project.status == ProjectStatus.DISPUTED
    with pytest.raises(InvalidState):
        projects.cancel_project(db, project, client)


def test_is_overdue(db, engagement):
    project, client, _ = engagement
    assert project.deadline == NOW + timedelta(days=30)

    assert not projects.is_overdue(project, NOW)
    assert not projects.is_overdue(project, project.deadline)
    assert projects.is_overdue(project, project.deadline + timedelta(seconds=1))

    projects.mark_completed(db, project, client, now=NOW)
    assert not projects.is_overdue(project, project.deadline + timedelta(days=1))


def test_project_without_deadline_is_never_overdue(db, engagement):
    project, _, _ = engagement
    project.deadline = None
    assert not projects.is_overdue(project, NOW + timedelta(days=365))


def test_ratings_are_written_once_per_side(db, engagement):
    project, client, freelancer = engagement
    with pytest.raises(InvalidState):
        projects.rate_project(db, project, client, 5)

    projects.mark_completed(db, project, client, now=NOW)
    projects.rate_project(db, project, client, 5, "Great work")
    projects.rate_project(db, project, freelancer, 4, "Clear brief")

    assert project.client_rating == 5
    assert project.client_feedback == "Great work"
    assert project.freelancer_rating == 4
    assert project.freelancer_feedback == "Clear brief"
    with pytest.raises(InvalidState):
        projects.rate_project(db, project, client, 1)


def test_lookup_and_listing(db, engagement):
    project, client, freelancer = engagement
    other, _, _ = make_project(db, now=NOW)

    assert projects.get_project_for(db, project.id, freelancer).id == project.id
    with pytest.raises(PermissionDenied):
        projects.get_project_for(db, other.id, client)
    with pytest.raises(NotFound):
        projects.get_project_for(db, "missing", client)

    assert [p.id for p in projects.list_user_projects(db, client).items] == [project.id]
    assert projects.list_user_projects(db, freelancer, ProjectStatus.COMPLETED).total == 0

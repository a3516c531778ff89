import itertools
from datetime import timedelta

import accounts
import catalog
import jobs
import proposals
import schemas
from models import utcnow

PASSWORD = "secret-password"

_seq = itertools.count(1)


def make_user(db, role="client", **fields):
    n = next(_seq)
    data = {
        "first_name": f"User{n}",
        "last_name": role.title(),
        "email": f"{role}{n}@example.com",
        "password": PASSWORD,
        "password_confirmation": PASSWORD,
        "role": role,
    }
    data.update(fields)
    return accounts.register_user(db, schemas.UserCreate(**data))


def make_category(db, name=None, parent=None, **fields):
    name = name or f"Category {next(_seq)}"
    data = {"name": name, "parent_id": parent.id if parent else None}
    data.update(fields)
    return catalog.create_category(db, schemas.CategoryCreate(**data))


def job_data(category, **fields):
    data = {
        "title": "Build a marketplace backend",
        "description": "We need an experienced developer to build and document a REST backend.",
        "skills_required": ["Python", "FastAPI"],
        "budget_type": "fixed",
        "budget_min": 800,
        "budget_max": 1200,
        "experience_level": "intermediate",
        "category_id": category.id,
        "location_type": "remote",
        "publish_now": True,
    }
    data.update(fields)
    return schemas.JobCreate(**data)


def make_job(db, client, category=None, now=None, **fields):
    category = category or make_category(db)
    return jobs.create_job(db, client, job_data(category, **fields), now=now)


def make_proposal(db, freelancer, job, amount=1000, delivery_time=30, now=None, **fields):
    data = {
        "job_id": job.id,
        "cover_letter": "I have built several systems like this one.",
        "proposed_amount": amount,
        "delivery_time": delivery_time,
    }
    data.update(fields)
    return proposals.submit_proposal(db, freelancer, schemas.ProposalCreate(**data), now=now)


def make_project(db, now=None):
    """An active project with its client and freelancer."""
    now = now or utcnow()
    client = make_user(db, "client")
    freelancer = make_user(db, "freelancer")
    job = make_job(db, client, now=now - timedelta(days=1))
    proposal = make_proposal(db, freelancer, job, now=now)
    project = proposals.accept_proposal(db, proposal, client, now=now)
    return project, client, freelancer

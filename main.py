from fastapi import FastAPI, Request, Depends, status, Query
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware
import uvicorn
import logging
from typing import List, Optional

import accounts
import catalog
import chat
import jobs
import projects
import proposals
import schemas
from config import settings
from database import SessionLocal, engine, get_db
from errors import Conflict, MarketplaceError, NotAuthenticated, PermissionDenied, ValidationFailed
from models import (
    Base, BudgetType, ExperienceLevel, LocationType, ProjectStatus, ProposalStatus, User, UserRole
)

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="Freelance Marketplace")
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.SECRET_KEY,
    max_age=settings.SESSION_MAX_AGE,
    https_only=settings.SESSION_HTTPS_ONLY,
)


# Errors

@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    content = exc.to_dict()
    if isinstance(exc, Conflict) and exc.existing is not None:
        content[exc.key] = exc.existing
    return JSONResponse(status_code=exc.status_code, content=content)

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = {}
    for error in exc.errors():
        loc = [str(part) for part in error["loc"] if part not in ("body", "query", "path")]
        errors.setdefault(".".join(loc) or "body", []).append(error["msg"])
    return JSONResponse(
        status_code=422,
        content={"message": "Validation failed", "errors": errors}
    )


# Auth dependencies

def get_current_user(request: Request, db: Session = Depends(get_db)) -> Optional[User]:
    user_id = request.session.get("user_id")
    if not user_id:
        return None
    user = accounts.get_user_by_id(db, user_id)
    if not user or not user.is_active:
        return None
    return user

def get_required_user(request: Request, db: Session = Depends(get_db)) -> User:
    user = get_current_user(request, db)
    if not user:
        raise NotAuthenticated()
    return user

def get_admin_user(current_user: User = Depends(get_required_user)) -> User:
    if current_user.role != UserRole.ADMIN:
        raise PermissionDenied("Admin access required")
    return current_user


# Serialization

def dump(schema, obj) -> dict:
    return schema.model_validate(obj).model_dump(mode="json")

def paged(key: str, page, serialize) -> dict:
    return {key: [serialize(item) for item in page.items], "pagination": page.pagination()}

def user_payload(user: User) -> dict:
    return dump(schemas.UserRead, user)

def job_payload(job) -> dict:
    return dump(schemas.JobRead, job)

def proposal_payload(proposal) -> dict:
    return dump(schemas.ProposalRead, proposal)

def project_payload(project) -> dict:
    data = dump(schemas.ProjectRead, project)
    data["is_overdue"] = projects.is_overdue(project)
    return data

def message_payload(message) -> dict:
    return dump(schemas.MessageRead, message)

def conversation_payload(db: Session, conversation, user: User) -> dict:
    data = dump(schemas.ConversationRead, conversation)
    other = chat.other_participant(conversation, user)
    last = chat.last_message(db, conversation)
    data["other_participant"] = dump(schemas.UserBrief, other) if other else None
    data["project"] = dump(schemas.ProjectBrief, conversation.project) if conversation.project else None
    data["last_message"] = message_payload(last) if last else None
    data["unread_count"] = chat.unread_count(db, conversation, user)
    return data


# Startup: tables and default admin

@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        accounts.ensure_default_admin(db)
    finally:
        db.close()


# Auth

@app.post("/api/auth/register", status_code=status.HTTP_201_CREATED)
def register(data: schemas.UserCreate, request: Request, db: Session = Depends(get_db)):
    user = accounts.register_user(db, data)
    request.session["user_id"] = user.id
    return {"message": "User registered successfully", "user": user_payload(user)}

@app.post("/api/auth/login")
def login(data: schemas.LoginRequest, request: Request, db: Session = Depends(get_db)):
    user = accounts.authenticate(db, data.email, data.password)
    request.session["user_id"] = user.id
    logger.info("Login: %s", user.email)
    return {"message": "Login successful", "user": user_payload(user)}

@app.post("/api/auth/social-login")
def social_login(data: schemas.SocialLoginRequest, request: Request, db: Session = Depends(get_db)):
    user = accounts.social_login(db, data)
    request.session["user_id"] = user.id
    return {"message": "Login successful", "user": user_payload(user)}

@app.post("/api/auth/logout")
def logout(request: Request, current_user: User = Depends(get_required_user)):
    request.session.clear()
    return {"message": "Logged out successfully"}

@app.get("/api/auth/me")
def me(current_user: User = Depends(get_required_user)):
    return {"user": user_payload(current_user)}


# Profile

@app.get("/api/users/profile")
def get_profile(current_user: User = Depends(get_required_user)):
    return {"user": user_payload(current_user), "profile_completion": current_user.profile_completion_score}

@app.put("/api/users/profile")
def update_profile(data: schemas.ProfileUpdate, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    user = accounts.update_profile(db, current_user, data)
    return {"message": "Profile updated successfully", "user": user_payload(user)}

@app.delete("/api/users/profile")
def close_account(request: Request, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    accounts.close_account(db, current_user)
    request.session.clear()
    return {"message": "Account closed successfully"}


# Categories

@app.get("/api/categories")
def list_categories(db: Session = Depends(get_db)):
    return {"categories": [node.model_dump(mode="json") for node in catalog.category_tree(db)]}

@app.get("/api/categories/{category_id}")
def show_category(category_id: str, db: Session = Depends(get_db)):
    category = catalog.get_category(db, category_id)
    return {
        "category": dump(schemas.CategoryRead, category),
        "full_path": catalog.full_path(db, category),
        "children": [dump(schemas.CategoryRead, c) for c in catalog.children_of(db, category.id)],
    }

@app.post("/api/admin/categories", status_code=status.HTTP_201_CREATED)
def create_category(data: schemas.CategoryCreate, db: Session = Depends(get_db), admin: User = Depends(get_admin_user)):
    category = catalog.create_category(db, data)
    return {"message": "Category created successfully", "category": dump(schemas.CategoryRead, category)}

@app.put("/api/admin/categories/{category_id}")
def update_category(category_id: str, data: schemas.CategoryUpdate, db: Session = Depends(get_db), admin: User = Depends(get_admin_user)):
    category = catalog.get_category(db, category_id, active_only=False)
    category = catalog.update_category(db, category, data)
    return {"message": "Category updated successfully", "category": dump(schemas.CategoryRead, category)}


# Jobs

@app.get("/api/jobs")
def list_jobs(
    category_id: Optional[str] = None,
    budget_min: Optional[float] = Query(None, ge=0),
    budget_max: Optional[float] = Query(None, ge=0),
    budget_type: Optional[BudgetType] = None,
    experience_level: Optional[ExperienceLevel] = None,
    location_type: Optional[LocationType] = None,
    skills: List[str] = Query([]),
    sort_by: str = "latest",
    page: int = Query(1, ge=1),
    per_page: int = Query(settings.DEFAULT_PER_PAGE, ge=1, le=settings.MAX_PER_PAGE),
    db: Session = Depends(get_db)
):
    if sort_by not in jobs.SORT_KEYS:
        raise ValidationFailed({"sort_by": [f"The sort by must be one of: {', '.join(jobs.SORT_KEYS)}."]})
    filters = jobs.JobFilters(
        category_id=category_id,
        budget_min=budget_min,
        budget_max=budget_max,
        budget_type=budget_type,
        experience_level=experience_level,
        location_type=location_type,
        # ?skills=python,django and ?skills=python&skills=django are both accepted
        skills=[s for value in skills for s in value.split(",")],
        sort_by=sort_by,
        page=page,
        per_page=per_page,
    )
    return paged("jobs", jobs.list_published_jobs(db, filters), job_payload)

@app.get("/api/jobs/search")
def search_jobs(
    q: str = Query(..., min_length=2),
    page: int = Query(1, ge=1),
    per_page: int = Query(settings.DEFAULT_PER_PAGE, ge=1, le=settings.MAX_PER_PAGE),
    db: Session = Depends(get_db)
):
    return paged("jobs", jobs.search_jobs(db, q, page, per_page), job_payload)

@app.get("/api/jobs/my-jobs")
def my_jobs(page: int = Query(1, ge=1), db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    return paged("jobs", jobs.list_client_jobs(db, current_user, page), job_payload)

@app.get("/api/jobs/bookmarked")
def bookmarked_jobs(page: int = Query(1, ge=1), db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    return paged("jobs", jobs.list_bookmarked_jobs(db, current_user, page), job_payload)

@app.get("/api/jobs/category/{category_id}")
def jobs_by_category(category_id: str, page: int = Query(1, ge=1), db: Session = Depends(get_db)):
    category = catalog.get_category(db, category_id)
    result = paged("jobs", jobs.list_category_jobs(db, category.id, page), job_payload)
    result["category"] = dump(schemas.CategoryRead, category)
    return result

@app.post("/api/jobs", status_code=status.HTTP_201_CREATED)
def create_job(data: schemas.JobCreate, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    job = jobs.create_job(db, current_user, data)
    return {"message": "Job created successfully", "job": job_payload(job)}

@app.get("/api/jobs/{job_id}")
def show_job(job_id: str, request: Request, db: Session = Depends(get_db), current_user: Optional[User] = Depends(get_current_user)):
    job = jobs.get_visible_job(db, job_id, current_user)
    jobs.record_view(
        db, job, current_user,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    data = job_payload(job)
    data["views_count"] = jobs.view_count(db, job)
    data["category_path"] = catalog.full_path(db, job.category)
    data["is_accepting_proposals"] = jobs.is_accepting_proposals(db, job)
    if current_user and current_user.id == job.client_id:
        data["proposals"] = [proposal_payload(p) for p in jobs.pending_proposals(db, job)]
    return {"job": data}

@app.put("/api/jobs/{job_id}")
def update_job(job_id: str, data: schemas.JobUpdate, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    job = jobs.update_job(db, jobs.get_job(db, job_id), current_user, data)
    return {"message": "Job updated successfully", "job": job_payload(job)}

@app.post("/api/jobs/{job_id}/publish")
def publish_job(job_id: str, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    job = jobs.publish_job(db, jobs.get_job(db, job_id), current_user)
    return {"message": "Job published successfully", "job": job_payload(job)}

@app.post("/api/jobs/{job_id}/cancel")
def cancel_job(job_id: str, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    job = jobs.cancel_job(db, jobs.get_job(db, job_id), current_user)
    return {"message": "Job cancelled successfully", "job": job_payload(job)}

@app.post("/api/jobs/{job_id}/bookmark", status_code=status.HTTP_201_CREATED)
def bookmark_job(job_id: str, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    jobs.bookmark_job(db, jobs.get_visible_job(db, job_id, current_user), current_user)
    return {"message": "Job bookmarked successfully"}

@app.delete("/api/jobs/{job_id}/bookmark")
def remove_bookmark(job_id: str, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    jobs.remove_bookmark(db, jobs.get_job(db, job_id), current_user)
    return {"message": "Bookmark removed successfully"}

@app.delete("/api/jobs/{job_id}")
def delete_job(job_id: str, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    jobs.delete_job(db, jobs.get_job(db, job_id), current_user)
    return {"message": "Job deleted successfully"}


# Proposals

@app.post("/api/proposals", status_code=status.HTTP_201_CREATED)
def submit_proposal(data: schemas.ProposalCreate, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    proposal = proposals.submit_proposal(db, current_user, data)
    return {"message": "Proposal submitted successfully", "proposal": proposal_payload(proposal)}

@app.get("/api/proposals/my-proposals")
def my_proposals(
    status: Optional[ProposalStatus] = None,
    page: int = Query(1, ge=1),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_required_user)
):
    return paged("proposals", proposals.list_freelancer_proposals(db, current_user, status, page), proposal_payload)

@app.get("/api/proposals/job/{job_id}")
def job_proposals(job_id: str, page: int = Query(1, ge=1), db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    job = jobs.get_job(db, job_id)
    return paged("proposals", proposals.list_job_proposals(db, job, current_user, page), proposal_payload)

@app.get("/api/proposals/{proposal_id}")
def show_proposal(proposal_id: str, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    proposal = proposals.get_proposal_for(db, proposal_id, current_user)
    return {"proposal": proposal_payload(proposal)}

@app.put("/api/proposals/{proposal_id}")
def update_proposal(proposal_id: str, data: schemas.ProposalUpdate, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    proposal = proposals.update_proposal(db, proposals.get_proposal(db, proposal_id), current_user, data)
    return {"message": "Proposal updated successfully", "proposal": proposal_payload(proposal)}

@app.post("/api/proposals/{proposal_id}/accept")
def accept_proposal(proposal_id: str, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    proposal = proposals.get_proposal(db, proposal_id)
    project = proposals.accept_proposal(db, proposal, current_user)
    return {
        "message": "Proposal accepted successfully",
        "proposal": proposal_payload(proposal),
        "project": project_payload(project),
    }

@app.post("/api/proposals/{proposal_id}/reject")
def reject_proposal(proposal_id: str, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    proposal = proposals.reject_proposal(db, proposals.get_proposal(db, proposal_id), current_user)
    return {"message": "Proposal rejected", "proposal": proposal_payload(proposal)}

@app.post("/api/proposals/{proposal_id}/withdraw")
def withdraw_proposal(proposal_id: str, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    proposal = proposals.withdraw_proposal(db, proposals.get_proposal(db, proposal_id), current_user)
    return {"message": "Proposal withdrawn", "proposal": proposal_payload(proposal)}


# Projects

@app.get("/api/projects")
def list_projects(
    status: Optional[ProjectStatus] = None,
    page: int = Query(1, ge=1),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_required_user)
):
    return paged("projects", projects.list_user_projects(db, current_user, status, page), project_payload)

@app.get("/api/projects/{project_id}")
def show_project(project_id: str, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    project = projects.get_project_for(db, project_id, current_user)
    return {"project": project_payload(project)}

@app.put("/api/projects/{project_id}/progress")
def update_progress(project_id: str, data: schemas.ProgressUpdate, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    project = projects.get_project_for(db, project_id, current_user)
    project = projects.update_progress(db, project, current_user, data.progress_percentage)
    return {"message": "Progress updated", "project": project_payload(project)}

@app.post("/api/projects/{project_id}/complete")
def complete_project(project_id: str, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    project = projects.get_project_for(db, project_id, current_user)
    project = projects.mark_completed(db, project, current_user)
    return {"message": "Project marked as completed", "project": project_payload(project)}

@app.post("/api/projects/{project_id}/cancel")
def cancel_project(project_id: str, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    project = projects.get_project_for(db, project_id, current_user)
    project = projects.cancel_project(db, project, current_user)
    return {"message": "Project cancelled", "project": project_payload(project)}

@app.post("/api/projects/{project_id}/dispute")
def dispute_project(project_id: str, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    project = projects.get_project_for(db, project_id, current_user)
    project = projects.open_dispute(db, project, current_user)
    return {"message": "Dispute opened", "project": project_payload(project)}

@app.post("/api/projects/{project_id}/rate")
def rate_project(project_id: str, data: schemas.ProjectRating, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    project = projects.get_project_for(db, project_id, current_user)
    project = projects.rate_project(db, project, current_user, data.rating, data.feedback)
    return {"message": "Rating saved", "project": project_payload(project)}

@app.get("/api/projects/{project_id}/messages")
def project_messages(project_id: str, page: int = Query(1, ge=1), db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    project = projects.get_project_for(db, project_id, current_user)
    return paged("messages", chat.list_project_messages(db, project, current_user, page), message_payload)

@app.post("/api/projects/{project_id}/messages", status_code=status.HTTP_201_CREATED)
def send_project_message(project_id: str, data: schemas.MessageCreate, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    project = projects.get_project_for(db, project_id, current_user)
    message = chat.send_project_message(db, project, current_user, data.content, data.message_type, data.attachments)
    return {"message": "Message sent successfully", "data": message_payload(message)}


# Chat

@app.get("/api/chat/conversations")
def list_conversations(page: int = Query(1, ge=1), db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    result = chat.list_conversations(db, current_user, page)
    return paged("conversations", result, lambda c: conversation_payload(db, c, current_user))

@app.post("/api/chat/conversations", status_code=status.HTTP_201_CREATED)
def create_conversation(data: schemas.ConversationCreate, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    try:
        conversation = chat.find_or_create_conversation(
            db, current_user, data.participant_id, data.project_id, data.initial_message
        )
    except Conflict as exc:
        if exc.existing is not None:
            exc.existing = conversation_payload(db, exc.existing, current_user)
        raise
    return {
        "message": "Conversation created successfully",
        "conversation": conversation_payload(db, conversation, current_user),
        "initial_message": message_payload(chat.last_message(db, conversation)),
    }

@app.get("/api/chat/unread-count")
def unread_count(db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    return chat.unread_summary(db, current_user)

@app.get("/api/chat/conversations/{conversation_id}")
def show_conversation(conversation_id: str, page: int = Query(1, ge=1), db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    conversation = chat.get_conversation_for(db, conversation_id, current_user)
    result = chat.get_conversation_messages(db, conversation, current_user, page)
    data = paged("messages", result, message_payload)
    data["conversation"] = conversation_payload(db, conversation, current_user)
    return data

@app.post("/api/chat/conversations/{conversation_id}/messages", status_code=status.HTTP_201_CREATED)
def send_message(conversation_id: str, data: schemas.MessageCreate, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    conversation = chat.get_conversation_for(db, conversation_id, current_user)
    message = chat.send_message(db, conversation, current_user, data.content, data.message_type, data.attachments)
    return {"message": "Message sent successfully", "data": message_payload(message)}

@app.delete("/api/chat/conversations/{conversation_id}")
def delete_conversation(conversation_id: str, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    conversation = chat.get_conversation_for(db, conversation_id, current_user)
    chat.delete_conversation(db, conversation, current_user)
    return {"message": "Conversation deleted successfully"}

@app.put("/api/chat/conversations/{conversation_id}/read")
def mark_read(conversation_id: str, db: Session = Depends(get_db), current_user: User = Depends(get_required_user)):
    conversation = chat.get_conversation_for(db, conversation_id, current_user)
    marked = chat.mark_all_read(db, conversation, current_user)
    return {"message": "Messages marked as read", "marked": marked}


if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=8000)

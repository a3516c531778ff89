import enum
import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Text, Enum, Boolean, ForeignKey,
    JSON, Index, UniqueConstraint, text
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class UserRole(enum.Enum):
    CLIENT = "client"
    FREELANCER = "freelancer"
    ADMIN = "admin"

class BudgetType(enum.Enum):
    FIXED = "fixed"
    HOURLY = "hourly"

class ExperienceLevel(enum.Enum):
    ENTRY = "entry"
    INTERMEDIATE = "intermediate"
    EXPERT = "expert"

class LocationType(enum.Enum):
    REMOTE = "remote"
    ONSITE = "onsite"
    HYBRID = "hybrid"

class JobStatus(enum.Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class ProposalStatus(enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"

class ProjectStatus(enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"

class MessageType(enum.Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    SYSTEM = "system"


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_id)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    phone = Column(String)
    hashed_password = Column(String, nullable=False)
    role = Column(Enum(UserRole), nullable=False)

    # Profile
    avatar = Column(String)
    bio = Column(Text)
    skills = Column(JSON, default=list)
    location = Column(String)
    timezone = Column(String, default="Asia/Dhaka")
    hourly_rate = Column(Float)
    currency = Column(String(3), default="BDT")

    # Account state
    is_verified = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True)
    last_seen_at = Column(DateTime, index=True)
    profile_completion_score = Column(Integer, default=0)
    email_verified_at = Column(DateTime)
    phone_verified_at = Column(DateTime)
    social_provider = Column(String)
    social_provider_id = Column(String)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Category(Base):
    __tablename__ = "categories"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, index=True, nullable=False)
    description = Column(Text)
    icon = Column(String)
    parent_id = Column(String, ForeignKey("categories.id"), nullable=True, index=True)
    sort_order = Column(Integer, default=0)
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_status_published_at", "status", "published_at"),
        Index("ix_jobs_category_status", "category_id", "status"),
        Index("ix_jobs_budget", "budget_min", "budget_max"),
    )

    id = Column(String, primary_key=True, default=new_id)
    client_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)

    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    requirements = Column(Text)

    # Budget
    budget_type = Column(Enum(BudgetType), default=BudgetType.FIXED, nullable=False)
    budget_min = Column(Float, nullable=False)
    budget_max = Column(Float, nullable=False)
    currency = Column(String(3), default="BDT", nullable=False)
    duration_estimate = Column(Integer)  # days

    experience_level = Column(Enum(ExperienceLevel), default=ExperienceLevel.INTERMEDIATE, nullable=False)
    category_id = Column(String, ForeignKey("categories.id"), nullable=False)
    subcategory_id = Column(String, ForeignKey("categories.id"), nullable=True)

    location_type = Column(Enum(LocationType), default=LocationType.REMOTE, nullable=False)
    location = Column(String)

    is_featured = Column(Boolean, default=False)
    is_urgent = Column(Boolean, default=False)

    status = Column(Enum(JobStatus), default=JobStatus.DRAFT, nullable=False)
    published_at = Column(DateTime)
    deadline = Column(DateTime)
    attachments = Column(JSON, default=list)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime)

    client = relationship("User", foreign_keys=[client_id])
    category = relationship("Category", foreign_keys=[category_id])
    subcategory = relationship("Category", foreign_keys=[subcategory_id])
    skills = relationship("JobSkill", cascade="all, delete-orphan", order_by="JobSkill.id")

    @property
    def skills_required(self) -> list:
        return [s.skill for s in self.skills]

    def set_skills(self, names):
        existing = {s.skill: s for s in self.skills}
        cleaned = []
        for name in names:
            name = name.strip()
            if name and name not in cleaned:
                cleaned.append(name)
        self.skills = [existing.get(name) or JobSkill(skill=name) for name in cleaned]

    @property
    def formatted_budget(self) -> str:
        if self.budget_type == BudgetType.FIXED and self.budget_min == self.budget_max:
            return f"{self.currency} {self.budget_min:,.2f}"
        display = f"{self.currency} {self.budget_min:,.2f} - {self.budget_max:,.2f}"
        if self.budget_type == BudgetType.HOURLY:
            display += "/hr"
        return display


class JobSkill(Base):
    __tablename__ = "job_skills"
    __table_args__ = (UniqueConstraint("job_id", "skill", name="uq_job_skills_job_skill"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, ForeignKey("jobs.id"), nullable=False, index=True)
    skill = Column(String(50), nullable=False, index=True)


class JobView(Base):
    __tablename__ = "job_views"

    id = Column(String, primary_key=True, default=new_id)
    job_id = Column(String, ForeignKey("jobs.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=True)
    ip_address = Column(String(45))
    user_agent = Column(Text)
    created_at = Column(DateTime, default=utcnow)


class JobBookmark(Base):
    __tablename__ = "job_bookmarks"
    __table_args__ = (UniqueConstraint("user_id", "job_id", name="uq_job_bookmarks_user_job"),)

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    job_id = Column(String, ForeignKey("jobs.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)


class Proposal(Base):
    __tablename__ = "proposals"
    __table_args__ = (
        UniqueConstraint("job_id", "freelancer_id", name="uq_proposals_job_freelancer"),
        # Enum columns store member names, hence 'ACCEPTED'
        Index(
            "uq_proposals_one_accepted_per_job", "job_id",
            unique=True,
            sqlite_where=text("status = 'ACCEPTED'"),
            postgresql_where=text("status = 'ACCEPTED'"),
        ),
        Index("ix_proposals_job_status", "job_id", "status"),
        Index("ix_proposals_freelancer_status", "freelancer_id", "status"),
    )

    id = Column(String, primary_key=True, default=new_id)
    job_id = Column(String, ForeignKey("jobs.id"), nullable=False)
    freelancer_id = Column(String, ForeignKey("users.id"), nullable=False)

    cover_letter = Column(Text, nullable=False)
    proposed_amount = Column(Float, nullable=False)
    currency = Column(String(3), default="BDT", nullable=False)
    delivery_time = Column(Integer, nullable=False)  # days
    attachments = Column(JSON, default=list)

    status = Column(Enum(ProposalStatus), default=ProposalStatus.PENDING, nullable=False)
    submitted_at = Column(DateTime)
    responded_at = Column(DateTime)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime)

    job = relationship("Job", foreign_keys=[job_id])
    freelancer = relationship("User", foreign_keys=[freelancer_id])

    @property
    def formatted_amount(self) -> str:
        return f"{self.currency} {self.proposed_amount:,.2f}"


class Project(Base):
    __tablename__ = "projects"
    __table_args__ = (
        Index("ix_projects_client_status", "client_id", "status"),
        Index("ix_projects_freelancer_status", "freelancer_id", "status"),
        Index("ix_projects_status_deadline", "status", "deadline"),
    )

    id = Column(String, primary_key=True, default=new_id)
    job_id = Column(String, ForeignKey("jobs.id"), nullable=False)
    proposal_id = Column(String, ForeignKey("proposals.id"), nullable=False, unique=True)
    client_id = Column(String, ForeignKey("users.id"), nullable=False)
    freelancer_id = Column(String, ForeignKey("users.id"), nullable=False)

    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    budget = Column(Float, nullable=False)
    currency = Column(String(3), default="BDT", nullable=False)

    status = Column(Enum(ProjectStatus), default=ProjectStatus.ACTIVE, nullable=False)
    progress_percentage = Column(Integer, default=0, nullable=False)
    start_date = Column(DateTime)
    deadline = Column(DateTime)
    completion_date = Column(DateTime)

    # Ratings are 1-5, each written by the party the column is named after
    client_rating = Column(Integer)
    freelancer_rating = Column(Integer)
    client_feedback = Column(Text)
    freelancer_feedback = Column(Text)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime)

    job = relationship("Job", foreign_keys=[job_id])
    client = relationship("User", foreign_keys=[client_id])
    freelancer = relationship("User", foreign_keys=[freelancer_id])

    def has_party(self, user: User) -> bool:
        return user.id in (self.client_id, self.freelancer_id)


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        Index("ix_conversations_participants", "participant_one_id", "participant_two_id"),
        Index("ix_conversations_last_message", "last_message_at", "is_active"),
    )

    id = Column(String, primary_key=True, default=new_id)
    project_id = Column(String, ForeignKey("projects.id"), nullable=True, index=True)
    participant_one_id = Column(String, ForeignKey("users.id"), nullable=False)
    participant_two_id = Column(String, ForeignKey("users.id"), nullable=False)
    # Sorted participant ids plus project, unique per unordered pair and project
    participants_key = Column(String, unique=True, nullable=False)
    title = Column(String)

    last_message_id = Column(
        String,
        ForeignKey("messages.id", use_alter=True, name="fk_conversations_last_message_id"),
        nullable=True,
    )
    last_message_at = Column(DateTime)
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime)

    participant_one = relationship("User", foreign_keys=[participant_one_id])
    participant_two = relationship("User", foreign_keys=[participant_two_id])
    project = relationship("Project", foreign_keys=[project_id])

    def has_participant(self, user: User) -> bool:
        return user.id in (self.participant_one_id, self.participant_two_id)


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
        Index("ix_messages_recipient_read", "recipient_id", "read_at"),
    )

    id = Column(String, primary_key=True, default=new_id)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False)
    sender_id = Column(String, ForeignKey("users.id"), nullable=False)
    recipient_id = Column(String, ForeignKey("users.id"), nullable=False)
    project_id = Column(String, ForeignKey("projects.id"), nullable=True)

    content = Column(Text, nullable=False)
    message_type = Column(Enum(MessageType), default=MessageType.TEXT, nullable=False)
    attachments = Column(JSON, default=list)
    is_system_message = Column(Boolean, default=False)

    read_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime)

    sender = relationship("User", foreign_keys=[sender_id])

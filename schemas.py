from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from datetime import datetime
from typing import Optional, List, Literal
from models import (
    UserRole, BudgetType, ExperienceLevel, LocationType, JobStatus,
    ProposalStatus, ProjectStatus, MessageType
)

# --- Users ---

class UserCreate(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=255)
    last_name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=72)
    password_confirmation: str
    role: Literal["client", "freelancer"]
    phone: Optional[str] = Field(None, max_length=20)
    location: Optional[str] = Field(None, max_length=255)

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.password_confirmation:
            raise ValueError("The password confirmation does not match.")
        return self

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class SocialLoginRequest(BaseModel):
    provider: Literal["google", "facebook", "linkedin"]
    provider_id: str = Field(..., min_length=1)
    email: EmailStr
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    avatar: Optional[str] = None
    role: Optional[Literal["client", "freelancer"]] = None

class ProfileUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=255)
    last_name: Optional[str] = Field(None, min_length=1, max_length=255)
    phone: Optional[str] = Field(None, max_length=20)
    avatar: Optional[str] = None
    bio: Optional[str] = None
    skills: Optional[List[str]] = None
    location: Optional[str] = Field(None, max_length=255)
    timezone: Optional[str] = None
    hourly_rate: Optional[float] = Field(None, ge=0)

class UserBrief(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    first_name: str
    last_name: str
    full_name: str
    avatar: Optional[str] = None

class UserRead(UserBrief):
    email: str
    role: UserRole
    phone: Optional[str] = None
    bio: Optional[str] = None
    skills: Optional[List[str]] = None
    location: Optional[str] = None
    timezone: Optional[str] = None
    hourly_rate: Optional[float] = None
    is_verified: bool
    is_active: bool
    last_seen_at: Optional[datetime] = None
    profile_completion_score: int
    created_at: datetime

# --- Categories ---

class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    slug: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    icon: Optional[str] = None
    parent_id: Optional[str] = None
    sort_order: int = 0
    is_active: bool = True

class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    slug: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    icon: Optional[str] = None
    parent_id: Optional[str] = None
    sort_order: Optional[int] = None
    is_active: Optional[bool] = None

class CategoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    slug: str
    description: Optional[str] = None
    icon: Optional[str] = None
    parent_id: Optional[str] = None
    sort_order: int
    is_active: bool

class CategoryTree(CategoryRead):
    children: List["CategoryTree"] = []

CategoryTree.model_rebuild()

# --- Jobs ---

MAX_SKILL_LENGTH = 50

def check_skill_lengths(skills):
    if skills and any(len(s.strip()) > MAX_SKILL_LENGTH for s in skills):
        raise ValueError(f"Each skill may be at most {MAX_SKILL_LENGTH} characters.")
    return skills

class JobCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=50)
    requirements: Optional[str] = None
    skills_required: List[str] = Field(..., min_length=1)
    budget_type: BudgetType = BudgetType.FIXED
    budget_min: float = Field(..., ge=0)
    budget_max: float = Field(..., ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    duration_estimate: Optional[int] = Field(None, ge=1)
    experience_level: ExperienceLevel
    category_id: str
    subcategory_id: Optional[str] = None
    location_type: LocationType
    location: Optional[str] = Field(None, max_length=255)
    deadline: Optional[datetime] = None
    attachments: List[str] = []
    is_urgent: bool = False
    publish_now: bool = False

    @field_validator("skills_required")
    @classmethod
    def skill_lengths(cls, value):
        return check_skill_lengths(value)

    @model_validator(mode="after")
    def check_budget_and_location(self):
        if self.budget_max < self.budget_min:
            raise ValueError("budget_max must be greater than or equal to budget_min.")
        if self.location_type != LocationType.REMOTE and not self.location:
            raise ValueError("location is required when location_type is onsite or hybrid.")
        return self

class JobUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, min_length=50)
    requirements: Optional[str] = None
    skills_required: Optional[List[str]] = Field(None, min_length=1)
    budget_type: Optional[BudgetType] = None
    budget_min: Optional[float] = Field(None, ge=0)
    budget_max: Optional[float] = Field(None, ge=0)
    experience_level: Optional[ExperienceLevel] = None
    location_type: Optional[LocationType] = None
    location: Optional[str] = Field(None, max_length=255)
    deadline: Optional[datetime] = None
    is_urgent: Optional[bool] = None
    status: Optional[Literal["draft", "published"]] = None

    @field_validator("skills_required")
    @classmethod
    def skill_lengths(cls, value):
        return check_skill_lengths(value)

class JobRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    client_id: str
    client: Optional[UserBrief] = None
    title: str
    description: str
    requirements: Optional[str] = None
    skills_required: List[str]
    budget_type: BudgetType
    budget_min: float
    budget_max: float
    currency: str
    formatted_budget: str
    duration_estimate: Optional[int] = None
    experience_level: ExperienceLevel
    category_id: str
    category: Optional[CategoryRead] = None
    subcategory_id: Optional[str] = None
    location_type: LocationType
    location: Optional[str] = None
    is_featured: bool
    is_urgent: bool
    status: JobStatus
    published_at: Optional[datetime] = None
    deadline: Optional[datetime] = None
    attachments: Optional[List[str]] = None
    created_at: datetime
    updated_at: datetime

# --- Proposals ---

class ProposalCreate(BaseModel):
    job_id: str
    cover_letter: str = Field(..., min_length=10)
    proposed_amount: float = Field(..., gt=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    delivery_time: int = Field(..., ge=1)
    attachments: List[str] = []

class ProposalUpdate(BaseModel):
    cover_letter: Optional[str] = Field(None, min_length=10)
    proposed_amount: Optional[float] = Field(None, gt=0)
    delivery_time: Optional[int] = Field(None, ge=1)

class ProposalRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str
    freelancer_id: str
    freelancer: Optional[UserBrief] = None
    cover_letter: str
    proposed_amount: float
    currency: str
    formatted_amount: str
    delivery_time: int
    attachments: Optional[List[str]] = None
    status: ProposalStatus
    submitted_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    created_at: datetime

# --- Projects ---

class ProjectRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str
    proposal_id: str
    client_id: str
    freelancer_id: str
    title: str
    description: str
    budget: float
    currency: str
    status: ProjectStatus
    progress_percentage: int
    start_date: Optional[datetime] = None
    deadline: Optional[datetime] = None
    completion_date: Optional[datetime] = None
    client_rating: Optional[int] = None
    freelancer_rating: Optional[int] = None
    client_feedback: Optional[str] = None
    freelancer_feedback: Optional[str] = None
    created_at: datetime

class ProgressUpdate(BaseModel):
    progress_percentage: int

class ProjectRating(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    feedback: Optional[str] = Field(None, max_length=2000)

# --- Chat ---

class ConversationCreate(BaseModel):
    participant_id: str
    project_id: Optional[str] = None
    initial_message: str = Field(..., min_length=1, max_length=1000)

class MessageCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=5000)
    message_type: Literal["text", "image", "file"] = "text"
    attachments: List[str] = []

    @model_validator(mode="after")
    def check_attachments(self):
        if any(len(a) > 255 for a in self.attachments):
            raise ValueError("Each attachment may be at most 255 characters.")
        return self

class MessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    conversation_id: str
    sender_id: str
    sender: Optional[UserBrief] = None
    recipient_id: str
    project_id: Optional[str] = None
    content: str
    message_type: MessageType
    attachments: Optional[List[str]] = None
    read_at: Optional[datetime] = None
    created_at: datetime

class ProjectBrief(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str

class ConversationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: Optional[str] = None
    participant_one_id: str
    participant_two_id: str
    title: Optional[str] = None
    last_message_id: Optional[str] = None
    last_message_at: Optional[datetime] = None
    is_active: bool
    created_at: datetime

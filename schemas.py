from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

RoleName = Literal["SEEKER", "EMPLOYER", "ADMIN", "COLLEGE"]
JobType = Literal["Full-time", "Part-time", "Contract", "Remote"]
ApplicationStatusName = Literal["Applied", "Screening", "Interview", "Offer", "Rejected"]
ScoreBand = Literal["strong", "moderate", "weak"]

JOB_TYPES = ("Full-time", "Part-time", "Contract", "Remote")
SCRAPE_PLATFORMS = ("Naukri.com", "LinkedIn Jobs", "Indeed India", "Monster.com", "TimesJobs")


# --- Auth / profiles --- #
class UserCreate(BaseModel):
    email: EmailStr
    # bcrypt refuses anything over 72 bytes; checked below
    password: str = Field(min_length=6, max_length=72)
    full_name: str = Field(min_length=1)
    role: RoleName = "SEEKER"

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        if len(value.encode("utf-8")) > 72:
            raise ValueError("password cannot be longer than 72 bytes")
        return value


class SignInRequest(BaseModel):
    email: EmailStr
    password: str


class User(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    full_name: str
    role: RoleName
    avatar_url: Optional[str] = None
    created_at: Optional[datetime] = None


class Session(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: User


class SessionInfo(BaseModel):
    user: User
    # None in local development mode
    expires_at: Optional[datetime] = None


class TokenPayload(BaseModel):
    sub: str
    jti: str
    role: RoleName
    exp: int


# --- Jobs --- #
class JobCreate(BaseModel):
    title: str = Field(min_length=1)
    company: str = Field(min_length=1)
    location: Optional[str] = None
    salary: Optional[str] = None
    type: JobType = "Full-time"
    description: str = ""
    requirements: List[str] = []


class Job(JobCreate):
    model_config = ConfigDict(from_attributes=True)

    id: int
    employer_id: Optional[int] = None
    posted_at: Optional[datetime] = None


class JobDescriptionRequest(BaseModel):
    title: str = Field(min_length=1)
    company: str = ""
    requirements: str = ""


class JobDescriptionResponse(BaseModel):
    description: str


# --- Applications --- #
class ApplicationCreate(BaseModel):
    resume_id: Optional[int] = None


class Application(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    job_id: int
    user_id: int
    resume_id: Optional[int] = None
    status: ApplicationStatusName
    ai_score: Optional[int] = None
    ai_analysis: Optional[dict] = None
    applied_at: Optional[datetime] = None


class ApplicationStatusUpdate(BaseModel):
    status: ApplicationStatusName


class JobSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    title: str
    company: str
    location: Optional[str] = None
    type: Optional[str] = None


class ApplicationHistoryItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    status: ApplicationStatusName
    applied_at: Optional[datetime] = None
    ai_score: Optional[int] = None
    job: Optional[JobSummary] = None


class ApplicationStats(BaseModel):
    total: int = 0
    interviewing: int = 0
    offers: int = 0


class ApplicationHistory(BaseModel):
    applications: List[ApplicationHistoryItem]
    stats: ApplicationStats


# --- AI structured outputs --- #
# No defaults on these: they double as the JSON schema sent to the model.
class MatchAnalysis(BaseModel):
    score: int
    reasoning: str
    missing_keywords: List[str]

    @field_validator("score")
    @classmethod
    def clamp_score(cls, value: int) -> int:
        return max(0, min(100, value))

    @field_validator("missing_keywords")
    @classmethod
    def limit_keywords(cls, value: List[str]) -> List[str]:
        return value[:3]


class CandidateAnalysis(MatchAnalysis):
    # "model" results are persisted; placeholders are not
    source: Literal["model", "simulated", "failed"] = "model"


class AIResumeData(BaseModel):
    summary: str
    skills: List[str]
    optimized_points: List[str]


class ScrapedJob(BaseModel):
    title: str
    company: str
    location: str
    salary: str
    type: str
    description: str
    requirements: List[str]


class ScrapedJobListings(BaseModel):
    jobs: List[ScrapedJob]


# --- Resumes --- #
class ResumeSummaryRequest(BaseModel):
    experience: str = Field(min_length=1)
    skills: str = ""


class ResumeSummaryResponse(BaseModel):
    summary: str


class ResumeOptimizeRequest(BaseModel):
    experience: str = Field(min_length=1)
    skills: str = ""
    target_role: str = ""


class ResumeCreate(BaseModel):
    title: Optional[str] = None
    target_role: str = ""
    summary: str = ""
    skills: List[str] = []
    raw_text: str = ""


class Resume(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    title: str
    summary: Optional[str] = None
    skills: List[str] = []
    raw_text: Optional[str] = None
    created_at: Optional[datetime] = None


# --- Ranking --- #
class RankedCandidate(BaseModel):
    rank: int
    application_id: int
    user_id: int
    full_name: str
    email: str
    status: ApplicationStatusName
    ai_score: Optional[int] = None
    analysis: Optional[CandidateAnalysis] = None
    band: Optional[ScoreBand] = None
    top_match: bool = False
    applied_at: Optional[datetime] = None


class RankingResponse(BaseModel):
    job_id: int
    scored: int
    candidates: List[RankedCandidate]


# --- Admin --- #
class ImportJobsRequest(BaseModel):
    platform: Literal["Naukri.com", "LinkedIn Jobs", "Indeed India", "Monster.com", "TimesJobs"] = "Naukri.com"
    keyword: str
    count: int = Field(default=5, ge=1, le=20)

    @field_validator("keyword")
    @classmethod
    def keyword_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("keyword cannot be empty")
        return value


class ImportJobsResponse(BaseModel):
    imported: int
    job_ids: List[int] = []
    logs: List[str]


class AdminStats(BaseModel):
    total_jobs: int
    total_users: int
    total_applications: int
    active_subscriptions: int


# --- Plans & subscriptions --- #
class PricingPlan(BaseModel):
    id: str
    name: str
    price: str
    # minor currency units (paise)
    amount: int
    features: List[str]
    recommended: bool = False
    target: Literal["SEEKER", "EMPLOYER", "COLLEGE"]


class Subscription(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    plan_id: str
    status: Literal["active", "cancelled", "expired"]
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class CurrentSubscription(BaseModel):
    plan: PricingPlan
    subscription: Optional[Subscription] = None


class UpgradeRequest(BaseModel):
    plan_id: str


class UpgradeResponse(BaseModel):
    status: Literal["active", "pending"]
    subscription: Optional[Subscription] = None
    checkout_url: Optional[str] = None

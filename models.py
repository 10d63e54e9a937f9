from datetime import datetime, timezone

from sqlalchemy.orm import relationship
from sqlalchemy import (
    Column,
    Integer,
    String,
    ForeignKey,
    Text,
    DateTime,
    JSON,
    Index,
    UniqueConstraint,
    text,
)
from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole:
    SEEKER = "SEEKER"
    EMPLOYER = "EMPLOYER"
    ADMIN = "ADMIN"
    COLLEGE = "COLLEGE"

    ALL = (SEEKER, EMPLOYER, ADMIN, COLLEGE)


class ApplicationStatus:
    APPLIED = "Applied"
    SCREENING = "Screening"
    INTERVIEW = "Interview"
    OFFER = "Offer"
    REJECTED = "Rejected"

    ALL = (APPLIED, SCREENING, INTERVIEW, OFFER, REJECTED)


class SubscriptionStatus:
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class User(Base):
    """Account plus public profile (the ``user_profiles`` record)."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=False)
    role = Column(String, nullable=False, default=UserRole.SEEKER)
    avatar_url = Column(String, nullable=True)
    hashed_password = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    jobs = relationship("Job", back_populates="employer", foreign_keys="Job.employer_id")
    applications = relationship("Application", back_populates="applicant")
    resumes = relationship("Resume", back_populates="owner")
    subscriptions = relationship("Subscription", back_populates="user")


class Job(Base):
    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    company = Column(String, nullable=False)
    location = Column(String, nullable=True)
    salary = Column(String, nullable=True)
    type = Column(String, nullable=False, default="Full-time")
    description = Column(Text, nullable=True)
    requirements = Column(JSON, nullable=False, default=list)
    # null for listings imported by the admin aggregator
    employer_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    posted_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    employer = relationship("User", back_populates="jobs", foreign_keys=[employer_id])
    applications = relationship(
        "Application", back_populates="job", cascade="all, delete-orphan"
    )


class Application(Base):
    __tablename__ = "applications"
    __table_args__ = (
        UniqueConstraint("job_id", "user_id", name="uq_applications_job_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    resume_id = Column(Integer, ForeignKey("resumes.id"), nullable=True)
    status = Column(String, nullable=False, default=ApplicationStatus.APPLIED)
    ai_score = Column(Integer, nullable=True)
    ai_analysis = Column(JSON, nullable=True)
    applied_at = Column(DateTime(timezone=True), default=utcnow)

    job = relationship("Job", back_populates="applications")
    applicant = relationship("User", back_populates="applications")
    resume = relationship("Resume")


class Resume(Base):
    __tablename__ = "resumes"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    summary = Column(Text, nullable=True)
    skills = Column(JSON, nullable=False, default=list)
    raw_text = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    owner = relationship("User", back_populates="resumes")


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        # at most one active subscription per user
        Index(
            "uq_subscriptions_one_active",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(String, nullable=False)
    status = Column(String, nullable=False, default=SubscriptionStatus.ACTIVE)
    start_date = Column(DateTime(timezone=True), default=utcnow)
    end_date = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="subscriptions")


class RevokedSession(Base):
    """Session token ids invalidated by sign-out."""

    __tablename__ = "revoked_sessions"

    jti = Column(String, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    revoked_at = Column(DateTime(timezone=True), default=utcnow)

from datetime import datetime, timedelta
from typing import List, Optional
from urllib.parse import quote

from sqlalchemy import func, or_
from sqlalchemy.orm import Session, joinedload

import models
import schemas
from models import ApplicationStatus, SubscriptionStatus, utcnow


def default_avatar_url(full_name: str) -> str:
    return f"https://ui-avatars.com/api/?name={quote(full_name)}&background=random"


# --- User CRUD ---
def get_user_by_id(db: Session, user_id: int):
    """Get a user by their primary key ID."""
    return db.query(models.User).filter(models.User.id == user_id).first()


def get_user_by_email(db: Session, email: str):
    return (
        db.query(models.User)
        .filter(func.lower(models.User.email) == email.lower())
        .first()
    )


def create_user(db: Session, user: schemas.UserCreate, hashed_password: str, role: Optional[str] = None):
    db_user = models.User(
        email=user.email.lower(),
        full_name=user.full_name,
        role=role or user.role,
        avatar_url=default_avatar_url(user.full_name),
        hashed_password=hashed_password,
    )
    db.add(db_user)
    db.flush()  # Assign ID without committing
    db.refresh(db_user)
    return db_user


def count_users(db: Session) -> int:
    return db.query(func.count(models.User.id)).scalar()


# --- Session revocation ---
def revoke_session(db: Session, jti: str, user_id: int):
    if is_session_revoked(db, jti):
        return None
    revoked = models.RevokedSession(jti=jti, user_id=user_id)
    db.add(revoked)
    db.commit()
    return revoked


def is_session_revoked(db: Session, jti: str) -> bool:
    return db.get(models.RevokedSession, jti) is not None


# --- Job CRUD ---
def create_job(db: Session, job: schemas.JobCreate, employer_id: Optional[int]):
    """Creates a job; ``employer_id`` is None for imported listings."""
    db_job = models.Job(employer_id=employer_id, **job.model_dump())
    db.add(db_job)
    db.flush()
    return db_job


def get_job(db: Session, job_id: int):
    return db.query(models.Job).filter(models.Job.id == job_id).first()


def list_jobs(db: Session, search: Optional[str] = None, limit: int = 100, offset: int = 0):
    """Newest jobs first, optionally filtered on title or company."""
    query = db.query(models.Job)
    if search:
        term = search.strip()
        # literal substring match: % and _ in the query are not wildcards
        query = query.filter(
            or_(
                models.Job.title.icontains(term, autoescape=True),
                models.Job.company.icontains(term, autoescape=True),
            )
        )
    return (
        query.order_by(models.Job.posted_at.desc(), models.Job.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def get_jobs_for_employer(db: Session, employer_id: int):
    return (
        db.query(models.Job)
        .filter(models.Job.employer_id == employer_id)
        .order_by(models.Job.posted_at.desc(), models.Job.id.desc())
        .all()
    )


def count_jobs(db: Session) -> int:
    return db.query(func.count(models.Job.id)).scalar()


# --- Application CRUD ---
def get_application(db: Session, application_id: int):
    return (
        db.query(models.Application)
        .filter(models.Application.id == application_id)
        .first()
    )


def get_application_for_job(db: Session, job_id: int, user_id: int):
    return (
        db.query(models.Application)
        .filter(models.Application.job_id == job_id, models.Application.user_id == user_id)
        .first()
    )


def create_application(db: Session, job_id: int, user_id: int, resume_id: Optional[int] = None):
    """Insert an Applied application. Raises IntegrityError on a duplicate."""
    db_application = models.Application(
        job_id=job_id,
        user_id=user_id,
        resume_id=resume_id,
        status=ApplicationStatus.APPLIED,
    )
    db.add(db_application)
    db.flush()
    return db_application


def get_applications_for_job(db: Session, job_id: int) -> List[models.Application]:
    """All applications for a job in the order they were submitted."""
    return (
        db.query(models.Application)
        .options(joinedload(models.Application.applicant), joinedload(models.Application.resume))
        .filter(models.Application.job_id == job_id)
        .order_by(models.Application.applied_at.asc(), models.Application.id.asc())
        .all()
    )


def get_applications_for_user(db: Session, user_id: int) -> List[models.Application]:
    return (
        db.query(models.Application)
        .options(joinedload(models.Application.job))
        .filter(models.Application.user_id == user_id)
        .order_by(models.Application.applied_at.desc(), models.Application.id.desc())
        .all()
    )


def update_application_score(db: Session, application: models.Application, score: int, analysis: dict):
    application.ai_score = score
    application.ai_analysis = analysis
    db.add(application)
    return application


def update_application_status(db: Session, application: models.Application, status: str):
    application.status = status
    db.add(application)
    return application


def count_applications(db: Session) -> int:
    return db.query(func.count(models.Application.id)).scalar()


# --- Resume CRUD ---
def create_resume(db: Session, user_id: int, title: str, summary: str = "", skills: Optional[List[str]] = None, raw_text: str = ""):
    db_resume = models.Resume(
        user_id=user_id,
        title=title,
        summary=summary,
        skills=skills or [],
        raw_text=raw_text,
    )
    db.add(db_resume)
    db.flush()
    return db_resume


def get_resume(db: Session, resume_id: int, user_id: int):
    return (
        db.query(models.Resume)
        .filter(models.Resume.id == resume_id, models.Resume.user_id == user_id)
        .first()
    )


def get_resumes_for_user(db: Session, user_id: int):
    return (
        db.query(models.Resume)
        .filter(models.Resume.user_id == user_id)
        .order_by(models.Resume.created_at.desc(), models.Resume.id.desc())
        .all()
    )


def get_latest_resume(db: Session, user_id: int):
    return (
        db.query(models.Resume)
        .filter(models.Resume.user_id == user_id)
        .order_by(models.Resume.created_at.desc(), models.Resume.id.desc())
        .first()
    )


# --- Subscription CRUD ---
def get_active_subscription(db: Session, user_id: int):
    return (
        db.query(models.Subscription)
        .filter(
            models.Subscription.user_id == user_id,
            models.Subscription.status == SubscriptionStatus.ACTIVE,
        )
        .order_by(models.Subscription.start_date.desc())
        .first()
    )


def get_subscriptions_for_user(db: Session, user_id: int):
    return (
        db.query(models.Subscription)
        .filter(models.Subscription.user_id == user_id)
        .order_by(models.Subscription.start_date.desc(), models.Subscription.id.desc())
        .all()
    )


def cancel_active_subscriptions(db: Session, user_id: int, now: Optional[datetime] = None) -> int:
    """Mark every active subscription of the user as cancelled."""
    now = now or utcnow()
    cancelled = (
        db.query(models.Subscription)
        .filter(
            models.Subscription.user_id == user_id,
            models.Subscription.status == SubscriptionStatus.ACTIVE,
        )
        .update(
            {"status": SubscriptionStatus.CANCELLED, "end_date": now},
            synchronize_session="fetch",
        )
    )
    db.flush()
    return cancelled


def create_subscription(db: Session, user_id: int, plan_id: str, duration_days: Optional[int] = None):
    start = utcnow()
    end = start + timedelta(days=duration_days) if duration_days else None
    db_subscription = models.Subscription(
        user_id=user_id,
        plan_id=plan_id,
        status=SubscriptionStatus.ACTIVE,
        start_date=start,
        end_date=end,
    )
    db.add(db_subscription)
    db.flush()
    return db_subscription


def expire_subscription(db: Session, subscription: models.Subscription):
    subscription.status = SubscriptionStatus.EXPIRED
    db.add(subscription)
    db.flush()
    return subscription


def count_active_subscriptions(db: Session) -> int:
    return (
        db.query(func.count(models.Subscription.id))
        .filter(models.Subscription.status == SubscriptionStatus.ACTIVE)
        .scalar()
    )

import asyncio
import functools
import hashlib
import random
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

import openai
import structlog
from aws_embedded_metrics import metric_scope
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import crud
import llm_interaction
import models
import schemas
from events import ConnectionManager, manager
from llm_interaction import LLMUnavailableError
from models import ApplicationStatus, utcnow
from plans import PLAN_DURATION_DAYS
from settings import get_settings

logger = structlog.get_logger(__name__)

# Errors that turn an AI call into a fallback value instead of a 500
AI_ERRORS = (openai.OpenAIError, ValueError, LLMUnavailableError)

# Simple LLM response cache to reduce API calls
_LLM_CACHE = {}


def cache_llm_response(func):
    """Decorator to cache LLM responses based on function parameters"""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        args_str = [str(arg) for arg in args]
        kwargs_str = [f"{k}={v}" for k, v in sorted(kwargs.items())]
        all_args = func.__name__ + "|" + "|".join(args_str + kwargs_str)
        cache_key = hashlib.md5(all_args.encode()).hexdigest()

        if cache_key in _LLM_CACHE:
            logger.info(
                f"Using cached LLM response for {func.__name__}, hash {cache_key[:8]}"
            )
            return _LLM_CACHE[cache_key]

        result = await func(*args, **kwargs)

        # failures raise, so only real answers land here
        if result is not None:
            _LLM_CACHE[cache_key] = result

        return result

    return wrapper


def clear_llm_cache() -> None:
    _LLM_CACHE.clear()


call_llm_for_resume_summary_cached = cache_llm_response(llm_interaction.call_llm_for_resume_summary)
call_llm_for_resume_optimization_cached = cache_llm_response(llm_interaction.call_llm_for_resume_optimization)
call_llm_for_job_description_cached = cache_llm_response(llm_interaction.call_llm_for_job_description)
call_llm_for_candidate_match_cached = cache_llm_response(llm_interaction.call_llm_for_candidate_match)


# --- AI operations with user-facing fallbacks --- #


async def generate_resume_summary(experience: str, skills: str) -> str:
    if not llm_interaction.llm_available():
        return "AI service unavailable (Missing API Key)."
    try:
        return await call_llm_for_resume_summary_cached(experience, skills)
    except AI_ERRORS as exc:
        logger.error("Resume summary generation failed", exc_info=exc)
        return "Failed to generate summary. Please try again."


async def optimize_resume_content(resume_text: str, target_role: str) -> schemas.AIResumeData:
    if not llm_interaction.llm_available():
        return schemas.AIResumeData(
            summary="AI Unavailable",
            skills=["Manual Entry"],
            optimized_points=["Please add API Key to use AI features."],
        )
    try:
        return await call_llm_for_resume_optimization_cached(resume_text, target_role)
    except AI_ERRORS as exc:
        logger.error("Resume optimization failed", exc_info=exc)
        return schemas.AIResumeData(
            summary="Error generating content.", skills=[], optimized_points=[]
        )


async def generate_job_description(title: str, company: str, key_requirements: str) -> str:
    if not llm_interaction.llm_available():
        return "AI service unavailable."
    try:
        return await call_llm_for_job_description_cached(title, company, key_requirements)
    except AI_ERRORS as exc:
        logger.error("Job description generation failed", exc_info=exc)
        return "Failed to generate job description."


async def analyze_candidate_match(resume_text: str, job_description: str) -> schemas.CandidateAnalysis:
    """Score a resume against a job.

    Never raises: a missing key yields a simulated score in [50, 89] and an
    API or parse failure yields score 0. Both are tagged via ``source``.
    """
    if not llm_interaction.llm_available():
        return schemas.CandidateAnalysis(
            score=random.randint(50, 89),
            reasoning="API Key missing. Simulated Score.",
            missing_keywords=["API Key"],
            source="simulated",
        )
    try:
        result = await call_llm_for_candidate_match_cached(resume_text, job_description)
    except AI_ERRORS as exc:
        logger.error("Candidate match analysis failed", exc_info=exc)
        return schemas.CandidateAnalysis(
            score=0, reasoning="AI analysis failed.", missing_keywords=[], source="failed"
        )
    return schemas.CandidateAnalysis(
        score=result.score,
        reasoning=result.reasoning,
        missing_keywords=result.missing_keywords,
        source="model",
    )


def _normalize_job_type(value: str) -> str:
    for job_type in schemas.JOB_TYPES:
        if value.strip().lower() == job_type.lower():
            return job_type
    return "Full-time"


async def simulate_job_scraping(platform: str, keyword: str, count: int = 5) -> List[schemas.JobCreate]:
    """Generate ``count`` listings for ``keyword`` as if scraped from ``platform``.

    Unlike the other AI helpers this raises on failure so the import can
    report it.
    """
    listings = await llm_interaction.call_llm_for_job_listings(platform, keyword, count)
    return [
        schemas.JobCreate(
            title=job.title,
            company=job.company,
            location=job.location,
            salary=job.salary,
            type=_normalize_job_type(job.type),
            description=job.description,
            requirements=job.requirements,
        )
        for job in listings.jobs[:count]
    ]


# --- Candidate ranking --- #


def job_match_context(job: models.Job) -> str:
    """Text the candidate resumes are scored against."""
    return f"{job.description or ''} {', '.join(job.requirements or [])}".strip()


def candidate_resume_text(db: Session, application: models.Application) -> str:
    resume = application.resume or crud.get_latest_resume(db, application.user_id)
    if resume is None:
        applicant = application.applicant
        return f"{applicant.full_name} ({applicant.email}). No resume on file."

    parts = [resume.title, resume.summary]
    if resume.skills:
        parts.append("Skills: " + ", ".join(resume.skills))
    parts.append(resume.raw_text)
    return "\n".join(part for part in parts if part)


def score_band(score: Optional[int]) -> Optional[str]:
    if score is None:
        return None
    if score >= 80:
        return "strong"
    if score >= 50:
        return "moderate"
    return "weak"


def stored_analysis(application: models.Application) -> Optional[schemas.CandidateAnalysis]:
    if application.ai_score is None:
        return None
    details = application.ai_analysis or {}
    return schemas.CandidateAnalysis(
        score=application.ai_score,
        reasoning=details.get("reasoning", ""),
        missing_keywords=details.get("missing_keywords", []),
        source="model",
    )


def build_ranking(
    applications: Iterable[models.Application],
    fresh: Optional[Dict[int, schemas.CandidateAnalysis]] = None,
) -> List[schemas.RankedCandidate]:
    """Order candidates by score, highest first.

    ``fresh`` holds analyses from the current run, keyed by application id;
    they take precedence over stored scores. Unscored candidates count as 0
    and ties keep submission order.
    """
    fresh = fresh or {}
    entries: List[Tuple[models.Application, Optional[schemas.CandidateAnalysis]]] = [
        (application, fresh.get(application.id) or stored_analysis(application))
        for application in applications
    ]
    entries.sort(key=lambda entry: entry[1].score if entry[1] else 0, reverse=True)

    ranked = []
    for index, (application, analysis) in enumerate(entries):
        score = analysis.score if analysis else None
        ranked.append(
            schemas.RankedCandidate(
                rank=index + 1,
                application_id=application.id,
                user_id=application.user_id,
                full_name=application.applicant.full_name,
                email=application.applicant.email,
                status=application.status,
                ai_score=score,
                analysis=analysis,
                band=score_band(score),
                top_match=index == 0 and score is not None,
                applied_at=application.applied_at,
            )
        )
    return ranked


@metric_scope
async def rank_candidates_for_job(
    db: Session,
    job: models.Job,
    force: bool = False,
    notify_user_id: Optional[int] = None,
    manager_override: Optional[ConnectionManager] = None,
    metrics=None,
) -> Tuple[List[schemas.RankedCandidate], int]:
    """Score every unscored applicant of ``job`` and return the ranking.

    Applications that already carry a score are left alone unless ``force``.
    Scoring requests run concurrently, bounded by ``ranking_concurrency``,
    and are all awaited before sorting. Only model-produced scores are
    stored; a stored score moves an Applied application to Screening.
    Returns the ranking and the number of candidates scored in this run.
    """
    metrics.set_namespace("HireGenRanking")
    metrics.set_property("job_id", job.id)
    _manager = manager_override or manager

    applications = crud.get_applications_for_job(db, job.id)
    pending = [a for a in applications if force or a.ai_score is None]
    logger.info(
        "Ranking candidates",
        job_id=job.id,
        candidates=len(applications),
        to_score=len(pending),
    )
    metrics.put_metric("candidates_to_score", len(pending), "Count")

    job_context = job_match_context(job)
    # resolve resume text up front; the session stays on this task
    resume_texts = {a.id: candidate_resume_text(db, a) for a in pending}
    semaphore = asyncio.Semaphore(max(1, get_settings().ranking_concurrency))

    async def score(application: models.Application):
        async with semaphore:
            analysis = await analyze_candidate_match(resume_texts[application.id], job_context)
        if notify_user_id is not None:
            await _manager.send_personal_message(
                {
                    "job_id": job.id,
                    "application_id": application.id,
                    "score": analysis.score,
                    "source": analysis.source,
                },
                notify_user_id,
                event="candidate_scored",
            )
        return application, analysis

    results = await asyncio.gather(*(score(application) for application in pending))

    fresh: Dict[int, schemas.CandidateAnalysis] = {}
    stored = 0
    for application, analysis in results:
        fresh[application.id] = analysis
        if analysis.source != "model":
            continue
        crud.update_application_score(
            db,
            application,
            analysis.score,
            {"reasoning": analysis.reasoning, "missing_keywords": analysis.missing_keywords},
        )
        if application.status == ApplicationStatus.APPLIED:
            crud.update_application_status(db, application, ApplicationStatus.SCREENING)
        stored += 1
    db.commit()

    metrics.put_metric("candidates_scored", len(results), "Count")
    metrics.put_metric("scores_stored", stored, "Count")
    logger.info("Ranking complete", job_id=job.id, scored=len(results), stored=stored)

    ranked = build_ranking(applications, fresh)
    if notify_user_id is not None:
        await _manager.send_personal_message(
            {
                "job_id": job.id,
                "scored": len(results),
                "top_application_id": ranked[0].application_id if ranked else None,
            },
            notify_user_id,
            event="ranking_complete",
        )
    return ranked, len(results)


# --- Application status --- #

ALLOWED_STATUS_TRANSITIONS = {
    ApplicationStatus.APPLIED: {
        ApplicationStatus.SCREENING,
        ApplicationStatus.INTERVIEW,
        ApplicationStatus.REJECTED,
    },
    ApplicationStatus.SCREENING: {ApplicationStatus.INTERVIEW, ApplicationStatus.REJECTED},
    ApplicationStatus.INTERVIEW: {ApplicationStatus.OFFER, ApplicationStatus.REJECTED},
    ApplicationStatus.OFFER: set(),
    ApplicationStatus.REJECTED: set(),
}


def can_transition(current: str, new: str) -> bool:
    # re-sending the current status is a no-op
    return current == new or new in ALLOWED_STATUS_TRANSITIONS.get(current, set())


def application_stats(applications: Iterable[models.Application]) -> schemas.ApplicationStats:
    stats = schemas.ApplicationStats()
    for application in applications:
        stats.total += 1
        if application.status == ApplicationStatus.INTERVIEW:
            stats.interviewing += 1
        if application.status == ApplicationStatus.OFFER:
            stats.offers += 1
    return stats


# --- Admin aggregator --- #


@metric_scope
async def import_jobs(
    db: Session,
    platform: str,
    keyword: str,
    count: int = 5,
    notify_user_id: Optional[int] = None,
    manager_override: Optional[ConnectionManager] = None,
    metrics=None,
) -> schemas.ImportJobsResponse:
    """Generate listings for ``keyword`` and store them as system-imported jobs."""
    metrics.set_namespace("HireGenImports")
    metrics.set_property("platform", platform)
    _manager = manager_override or manager
    logs: List[str] = []

    async def add_log(message: str) -> None:
        line = f"[{datetime.now().strftime('%H:%M:%S')}] {message}"
        logs.append(line)
        if notify_user_id is not None:
            await _manager.send_personal_message({"line": line}, notify_user_id, event="import_log")

    try:
        await add_log("Initializing AI Scraper Agent...")
        await add_log(f"Connecting to {platform} via Virtual Browser...")

        jobs = await simulate_job_scraping(platform, keyword, count)
        await add_log(f"Successfully parsed {len(jobs)} jobs from {platform}.")

        await add_log("Syncing with HireGen Database...")
        created = [crud.create_job(db, job, employer_id=None) for job in jobs]
        db.commit()
        job_ids = [job.id for job in created]

        await add_log(f"Done! Added {len(job_ids)} new jobs to the live board.")
    except (*AI_ERRORS, SQLAlchemyError) as exc:
        db.rollback()
        logger.error("Job import failed", platform=platform, keyword=keyword, exc_info=exc)
        metrics.put_metric("imports_failed", 1, "Count")
        await add_log("Error: Failed to import jobs.")
        return schemas.ImportJobsResponse(imported=0, job_ids=[], logs=logs)

    metrics.put_metric("jobs_imported", len(job_ids), "Count")
    logger.info("Imported jobs", platform=platform, keyword=keyword, imported=len(job_ids))
    return schemas.ImportJobsResponse(imported=len(job_ids), job_ids=job_ids, logs=logs)


# --- Subscriptions --- #


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def current_subscription(db: Session, user_id: int) -> Optional[models.Subscription]:
    """The user's active subscription, expiring it first if its term has ended."""
    subscription = crud.get_active_subscription(db, user_id)
    if subscription is None:
        return None
    if subscription.end_date and _as_utc(subscription.end_date) <= utcnow():
        logger.info("Subscription term ended", user_id=user_id, plan_id=subscription.plan_id)
        crud.expire_subscription(db, subscription)
        db.commit()
        return None
    return subscription


def activate_plan(db: Session, user_id: int, plan: schemas.PricingPlan) -> models.Subscription:
    """Replace the user's active subscription with ``plan``.

    The previous active row is cancelled before the new one is inserted so
    that a user never holds two active subscriptions.
    """
    cancelled = crud.cancel_active_subscriptions(db, user_id)
    duration = PLAN_DURATION_DAYS if plan.amount > 0 else None
    subscription = crud.create_subscription(db, user_id, plan.id, duration_days=duration)
    db.commit()
    db.refresh(subscription)
    logger.info(
        "Activated plan",
        user_id=user_id,
        plan_id=plan.id,
        cancelled_previous=cancelled,
    )
    return subscription

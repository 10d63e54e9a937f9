import asyncio
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, List, Literal, Optional

from fastapi import (
    Depends,
    FastAPI,
    File,
    Header,
    HTTPException,
    Query,
    Request,
    UploadFile,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse
import fitz
from docx import Document
import stripe
import structlog

import auth
import crud
import logic
import models
import plans
import schemas
from auth import (
    _get_authorization_header,
    get_current_user,
    require_admin,
    require_employer,
    require_seeker,
)
from database import create_db_and_tables, get_db
from events import manager
from models import UserRole
from observability import init_observability
from request_id_middleware import RequestIdMiddleware
from settings import Settings, get_settings


# Initialise observability before creating app
init_observability()
logger = structlog.get_logger(__name__)

# Create DB tables on startup
create_db_and_tables()

app = FastAPI(
    title="HireGen",
    description="Backend API for the HireGen AI job portal",
    version="0.1.0",
)

# --- CORS Middleware ---
origins = [
    "http://localhost",
    "http://localhost:3000",
    "http://localhost:8000",
    "http://127.0.0.1",
    "http://127.0.0.1:8000",
    "https://hiregen.in",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestIdMiddleware)

templates = Jinja2Templates(directory=str(Path(__file__).resolve().parent / "templates"))


# --- Landing page --- #
@app.get("/", response_class=HTMLResponse)
async def read_root(
    request: Request,
    theme: Literal["light", "dark", "gradient"] = "light",
    settings: Settings = Depends(get_settings),
):
    """Landing page with the seeker pricing plans."""
    return templates.TemplateResponse(
        request,
        "index.html",
        {
            "env": "dev",
            "theme": theme,
            "auth_enabled": settings.auth_enabled,
            "plans": plans.plans_for_role(UserRole.SEEKER),
        },
    )


@app.get("/favicon.ico", include_in_schema=False)
async def favicon():
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Auth Endpoints --- #
@app.post("/auth/signup", response_model=schemas.Session, status_code=status.HTTP_201_CREATED, tags=["Auth"])
def sign_up(
    user: schemas.UserCreate,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    if user.role == UserRole.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin accounts cannot be self-registered")
    if crud.get_user_by_email(db, email=user.email):
        raise HTTPException(status_code=400, detail="Email already registered")

    admin_emails = {email.lower() for email in settings.admin_emails}
    role = UserRole.ADMIN if user.email.lower() in admin_emails else user.role
    try:
        db_user = crud.create_user(db, user, hashed_password=auth.hash_password(user.password), role=role)
        db.commit()
    except IntegrityError:
        # a concurrent sign-up took the email between the check and the insert
        db.rollback()
        raise HTTPException(status_code=400, detail="Email already registered")
    db.refresh(db_user)
    logger.info("User signed up", user_id=db_user.id, role=db_user.role)
    return auth.create_session(db_user)


@app.post("/auth/signin", response_model=schemas.Session, tags=["Auth"])
def sign_in(credentials: schemas.SignInRequest, db: Session = Depends(get_db)):
    user = crud.get_user_by_email(db, email=credentials.email)
    if not user or not auth.verify_password(credentials.password, user.hashed_password):
        logger.warning("Sign-in failed", email=credentials.email)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")
    logger.info("User signed in", user_id=user.id)
    return auth.create_session(user)


@app.post("/auth/signout", tags=["Auth"])
def sign_out(
    authorization: Annotated[Optional[str], Depends(_get_authorization_header)],
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    if not settings.auth_enabled:
        return {"status": "signed_out"}

    token = auth.get_bearer_token(authorization)
    user = auth.authenticate_token(db, token)
    payload = auth.verify_token(token)
    crud.revoke_session(db, payload.jti, user.id)
    logger.info("User signed out", user_id=user.id)
    return {"status": "signed_out"}


@app.get("/auth/session", response_model=schemas.SessionInfo, tags=["Auth"])
def get_session(
    authorization: Annotated[Optional[str], Depends(_get_authorization_header)],
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    if not settings.auth_enabled:
        return schemas.SessionInfo(user=auth.local_dev_user(db))

    token = auth.get_bearer_token(authorization)
    user = auth.authenticate_token(db, token)
    payload = auth.verify_token(token)
    return schemas.SessionInfo(
        user=user,
        expires_at=datetime.fromtimestamp(payload.exp, tz=timezone.utc),
    )


@app.get("/users/me", response_model=schemas.User, tags=["Auth"])
def get_me(current_user: models.User = Depends(get_current_user)):
    """Returns the authenticated user's profile."""
    return current_user


# --- Job Board Endpoints --- #
@app.get("/jobs", response_model=List[schemas.Job], tags=["Jobs"])
def list_jobs_endpoint(
    q: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    """Public job board, newest first; ``q`` matches title or company."""
    return crud.list_jobs(db, search=q, limit=limit, offset=offset)


@app.get("/jobs/mine", response_model=List[schemas.Job], tags=["Jobs"])
def list_my_jobs(
    current_user: models.User = Depends(require_employer),
    db: Session = Depends(get_db),
):
    return crud.get_jobs_for_employer(db, employer_id=current_user.id)


@app.post("/jobs/generate-description", response_model=schemas.JobDescriptionResponse, tags=["LLM Features"])
async def generate_job_description_endpoint(
    body: schemas.JobDescriptionRequest,
    current_user: models.User = Depends(require_employer),
):
    description = await logic.generate_job_description(body.title, body.company, body.requirements)
    return {"description": description}


@app.post("/jobs", response_model=schemas.Job, status_code=status.HTTP_201_CREATED, tags=["Jobs"])
def publish_job(
    job: schemas.JobCreate,
    current_user: models.User = Depends(require_employer),
    db: Session = Depends(get_db),
):
    db_job = crud.create_job(db, job, employer_id=current_user.id)
    db.commit()
    db.refresh(db_job)
    logger.info("Job published", job_id=db_job.id, employer_id=current_user.id)
    return db_job


@app.get("/jobs/{job_id}", response_model=schemas.Job, tags=["Jobs"])
def get_job_endpoint(job_id: int, db: Session = Depends(get_db)):
    job = crud.get_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@app.post(
    "/jobs/{job_id}/apply",
    response_model=schemas.Application,
    status_code=status.HTTP_201_CREATED,
    tags=["Applications"],
)
def apply_to_job(
    job_id: int,
    application_in: Optional[schemas.ApplicationCreate] = None,
    current_user: models.User = Depends(require_seeker),
    db: Session = Depends(get_db),
):
    job = crud.get_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    resume_id = application_in.resume_id if application_in else None
    if resume_id is not None and not crud.get_resume(db, resume_id, user_id=current_user.id):
        raise HTTPException(status_code=404, detail="Resume not found")

    if crud.get_application_for_job(db, job_id=job_id, user_id=current_user.id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="You have already applied to this job")

    try:
        application = crud.create_application(db, job_id=job_id, user_id=current_user.id, resume_id=resume_id)
        db.commit()
    except IntegrityError:
        # lost a race with a concurrent submission for the same job
        db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="You have already applied to this job")
    db.refresh(application)
    logger.info("Application submitted", job_id=job_id, user_id=current_user.id, application_id=application.id)
    return application


# --- Candidate Ranking Endpoints --- #
def _get_managed_job(db: Session, job_id: int, user: models.User) -> models.Job:
    """Job the user may manage: their own posting, or any job for admins."""
    job = crud.get_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    if user.role != UserRole.ADMIN and job.employer_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You can only manage your own job postings")
    return job


@app.get("/jobs/{job_id}/candidates", response_model=schemas.RankingResponse, tags=["Candidates"])
def list_candidates(
    job_id: int,
    current_user: models.User = Depends(require_employer),
    db: Session = Depends(get_db),
):
    """Current ranking from stored scores; nothing is sent to the AI."""
    job = _get_managed_job(db, job_id, current_user)
    applications = crud.get_applications_for_job(db, job.id)
    return schemas.RankingResponse(job_id=job.id, scored=0, candidates=logic.build_ranking(applications))


@app.post("/jobs/{job_id}/rank", response_model=schemas.RankingResponse, tags=["Candidates"])
async def rank_candidates_endpoint(
    job_id: int,
    force: bool = False,
    current_user: models.User = Depends(require_employer),
    db: Session = Depends(get_db),
):
    job = _get_managed_job(db, job_id, current_user)
    ranked, scored = await logic.rank_candidates_for_job(
        db, job, force=force, notify_user_id=current_user.id
    )
    return schemas.RankingResponse(job_id=job.id, scored=scored, candidates=ranked)


@app.patch("/applications/{application_id}/status", response_model=schemas.Application, tags=["Candidates"])
def update_application_status_endpoint(
    application_id: int,
    body: schemas.ApplicationStatusUpdate,
    current_user: models.User = Depends(require_employer),
    db: Session = Depends(get_db),
):
    application = crud.get_application(db, application_id)
    if not application:
        raise HTTPException(status_code=404, detail="Application not found")
    _get_managed_job(db, application.job_id, current_user)

    if not logic.can_transition(application.status, body.status):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot move an application from {application.status} to {body.status}",
        )
    crud.update_application_status(db, application, body.status)
    db.commit()
    db.refresh(application)
    logger.info("Application status updated", application_id=application_id, status=body.status)
    return application


# --- Application History --- #
@app.get("/applications/me", response_model=schemas.ApplicationHistory, tags=["Applications"])
def application_history(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    applications = crud.get_applications_for_user(db, user_id=current_user.id)
    return schemas.ApplicationHistory(
        applications=[schemas.ApplicationHistoryItem.model_validate(a) for a in applications],
        stats=logic.application_stats(applications),
    )


# --- Resume Builder --- #
async def extract_text_from_resume(file: UploadFile) -> str:
    """Extract text from various resume formats (PDF, DOCX, TXT)"""
    content_type = file.content_type
    file_content = await file.read()
    extracted_text = ""

    if content_type == "application/pdf":
        with fitz.open(stream=file_content, filetype="pdf") as doc:
            for page in doc:
                extracted_text += page.get_text() + "\n"

    elif content_type in [
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/msword",
    ]:
        with tempfile.NamedTemporaryFile(delete=False, suffix=".docx") as temp_file:
            temp_file.write(file_content)
            temp_file_path = temp_file.name

        try:
            doc = Document(temp_file_path)
            extracted_text = "\n".join(para.text for para in doc.paragraphs)
        finally:
            if os.path.exists(temp_file_path):
                os.unlink(temp_file_path)

    elif content_type == "text/plain":
        extracted_text = file_content.decode("utf-8", errors="replace")

    else:
        raise HTTPException(
            status_code=400, detail=f"Unsupported file type: {content_type}"
        )

    return extracted_text


@app.post("/resumes/summary", response_model=schemas.ResumeSummaryResponse, tags=["LLM Features"])
async def generate_summary_endpoint(
    body: schemas.ResumeSummaryRequest,
    current_user: models.User = Depends(get_current_user),
):
    summary = await logic.generate_resume_summary(body.experience, body.skills)
    return {"summary": summary}


@app.post("/resumes/optimize", response_model=schemas.AIResumeData, tags=["LLM Features"])
async def optimize_resume_endpoint(
    body: schemas.ResumeOptimizeRequest,
    current_user: models.User = Depends(get_current_user),
):
    resume_text = f"Experience: {body.experience}. Skills: {body.skills}"
    return await logic.optimize_resume_content(resume_text, body.target_role)


@app.post("/resumes", response_model=schemas.Resume, status_code=status.HTTP_201_CREATED, tags=["Resumes"])
def save_resume(
    resume: schemas.ResumeCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    title = resume.title or (f"{resume.target_role} Resume" if resume.target_role else "My Resume")
    db_resume = crud.create_resume(
        db,
        user_id=current_user.id,
        title=title,
        summary=resume.summary,
        skills=resume.skills,
        raw_text=resume.raw_text,
    )
    db.commit()
    db.refresh(db_resume)
    logger.info("Resume saved", resume_id=db_resume.id, user_id=current_user.id)
    return db_resume


@app.get("/resumes", response_model=List[schemas.Resume], tags=["Resumes"])
def list_resumes(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return crud.get_resumes_for_user(db, user_id=current_user.id)


@app.post("/resumes/upload", response_model=schemas.Resume, status_code=status.HTTP_201_CREATED, tags=["Resumes"])
async def upload_resume_endpoint(
    resume: UploadFile = File(...),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    resume_text = await extract_text_from_resume(resume)
    if not resume_text.strip():
        raise HTTPException(
            status_code=400, detail="Could not extract text from the resume"
        )
    title = Path(resume.filename).stem if resume.filename else "Uploaded Resume"
    db_resume = crud.create_resume(db, user_id=current_user.id, title=title, raw_text=resume_text.strip())
    db.commit()
    db.refresh(db_resume)
    logger.info("Resume uploaded", resume_id=db_resume.id, chars=len(resume_text))
    return db_resume


# --- Admin Endpoints --- #
@app.post("/admin/import-jobs", response_model=schemas.ImportJobsResponse, tags=["Admin"])
async def import_jobs_endpoint(
    body: schemas.ImportJobsRequest,
    current_user: models.User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return await logic.import_jobs(
        db, body.platform, body.keyword, body.count, notify_user_id=current_user.id
    )


@app.get("/admin/stats", response_model=schemas.AdminStats, tags=["Admin"])
def admin_stats(
    current_user: models.User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return schemas.AdminStats(
        total_jobs=crud.count_jobs(db),
        total_users=crud.count_users(db),
        total_applications=crud.count_applications(db),
        active_subscriptions=crud.count_active_subscriptions(db),
    )


# --- Plans & Subscriptions --- #
@app.get("/plans", response_model=List[schemas.PricingPlan], tags=["Billing"])
def list_plans(target: Optional[Literal["SEEKER", "EMPLOYER", "COLLEGE"]] = None):
    if target is None:
        return plans.PRICING_PLANS
    return [plan for plan in plans.PRICING_PLANS if plan.target == target]


@app.get("/subscriptions/me", response_model=schemas.CurrentSubscription, tags=["Billing"])
def my_subscription(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    subscription = logic.current_subscription(db, current_user.id)
    plan_id = subscription.plan_id if subscription else plans.FREE_PLAN_ID
    plan = plans.get_plan(plan_id) or plans.get_plan(plans.FREE_PLAN_ID)
    return schemas.CurrentSubscription(plan=plan, subscription=subscription)


@app.post("/subscriptions/upgrade", response_model=schemas.UpgradeResponse, tags=["Billing"])
async def upgrade_subscription(
    body: schemas.UpgradeRequest,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    plan = plans.get_plan(body.plan_id)
    if not plan:
        raise HTTPException(status_code=404, detail="Plan not found")
    if plan not in plans.plans_for_role(current_user.role):
        raise HTTPException(status_code=400, detail=f"The {plan.name} plan is not available for your account")

    subscription = logic.current_subscription(db, current_user.id)
    active_plan_id = subscription.plan_id if subscription else plans.FREE_PLAN_ID
    if plan.id == active_plan_id:
        raise HTTPException(status_code=400, detail=f"You are already on the {plan.name} plan")

    if settings.stripe_secret_key and plan.amount > 0:
        checkout_url = await _create_checkout_session(request, current_user, plan, settings)
        return schemas.UpgradeResponse(status="pending", checkout_url=checkout_url)

    # Demo mode: no payment provider configured
    new_subscription = logic.activate_plan(db, current_user.id, plan)
    return schemas.UpgradeResponse(status="active", subscription=new_subscription)


async def _create_checkout_session(
    request: Request,
    user: models.User,
    plan: schemas.PricingPlan,
    settings: Settings,
) -> str:
    stripe.api_key = settings.stripe_secret_key

    success_url = request.url_for("billing_success_page")
    cancel_url = request.url_for("billing_cancel_page")

    logger.info("Creating Stripe checkout session", user_id=user.id, plan_id=plan.id)
    loop = asyncio.get_running_loop()
    session = await loop.run_in_executor(
        None,
        lambda: stripe.checkout.Session.create(
            payment_method_types=["card"],
            line_items=[
                {
                    "price_data": {
                        "currency": "inr",
                        "unit_amount": plan.amount,
                        "product_data": {"name": f"HireGen {plan.name}"},
                    },
                    "quantity": 1,
                }
            ],
            mode="payment",
            success_url=f"{success_url}?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=str(cancel_url),
            metadata={"user_id": str(user.id), "plan_id": plan.id},
            customer_email=user.email,
        ),
    )
    logger.info("Stripe checkout session created", session_id=session.id, user_id=user.id)
    return session.url


@app.get("/billing/success", name="billing_success_page", tags=["Billing"])
async def billing_success_page(settings: Settings = Depends(get_settings)):
    return RedirectResponse(url=f"{settings.app_base_url}/?billing=success")


@app.get("/billing/cancel", name="billing_cancel_page", tags=["Billing"])
async def billing_cancel_page(settings: Settings = Depends(get_settings)):
    return RedirectResponse(url=f"{settings.app_base_url}/?billing=cancelled")


@app.post("/billing/webhook", tags=["Billing"])
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    if not settings.stripe_webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stripe configuration missing",
        )

    payload = await request.body()
    try:
        event = stripe.Webhook.construct_event(payload, stripe_signature, settings.stripe_webhook_secret)
    except stripe.SignatureVerificationError:
        logger.warning("Stripe webhook signature verification failed")
        raise HTTPException(status_code=400, detail="Invalid signature")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")

    event_id = event.get("id")
    event_type = event.get("type")
    logger.info("Stripe webhook event received", event_id=event_id, event_type=event_type)

    if event_type != "checkout.session.completed":
        logger.info("Stripe webhook: unhandled event type", event_type=event_type)
        return JSONResponse(content={"status": "success"}, status_code=200)

    session = event["data"]["object"]
    metadata = session.get("metadata") or {}
    user_id = metadata.get("user_id")
    if not user_id:
        logger.error("Stripe webhook: missing user_id in metadata", event_id=event_id)
        return JSONResponse(content={"status": "error", "detail": "Missing user_id in metadata"}, status_code=200)

    plan = plans.get_plan(metadata.get("plan_id", ""))
    if not plan:
        logger.error("Stripe webhook: unknown plan", event_id=event_id, plan_id=metadata.get("plan_id"))
        return JSONResponse(content={"status": "error", "detail": "Unknown plan_id in metadata"}, status_code=200)

    user = crud.get_user_by_id(db, int(user_id))
    if not user:
        logger.warning("Stripe webhook: user not found; skipping activation", user_id=user_id)
        return JSONResponse(content={"status": "success"}, status_code=200)

    logic.activate_plan(db, user.id, plan)
    logger.info("Webhook processing finished", event_id=event_id, user_id=user.id, plan_id=plan.id)
    return JSONResponse(content={"status": "success"}, status_code=200)


# --- SSE Endpoint --- #
@app.get("/events/stream", tags=["Events"])
async def stream_events(
    request: Request,
    token: Optional[str] = None,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Server-sent events: ranking progress and import logs for the caller."""
    if settings.auth_enabled:
        # EventSource cannot send headers, so the token comes in the query
        if not token:
            raise HTTPException(401, "No token provided")
        user = auth.authenticate_token(db, token)
    else:
        user = auth.local_dev_user(db)
    user_id = user.id
    logger.info("SSE auth ok", user_id=user_id)

    queue = await manager.connect(user_id)

    async def event_generator():
        try:
            while True:
                message_dict = await queue.get()
                if await request.is_disconnected():
                    logger.info("SSE client disconnected before sending", user_id=user_id)
                    break
                yield message_dict
        except asyncio.CancelledError:
            logger.info("SSE connection cancelled", user_id=user_id)
        finally:
            manager.disconnect(user_id, queue)

    return EventSourceResponse(event_generator())


# --- Main execution --- (for running with uvicorn)
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)

from typing import Optional, Type, Union

import structlog
from openai import AsyncOpenAI
from pydantic import BaseModel

from settings import get_settings
from schemas import (
    AIResumeData,
    MatchAnalysis,
    ScrapedJobListings,
)

logger = structlog.get_logger(__name__)

# --- Application Info for OpenRouter ---
APP_NAME = "HireGen"
APP_URL = "https://hiregen.in"

# Characters of resume / job text included in a match prompt
MATCH_PROMPT_CHAR_LIMIT = 1000


class LLMUnavailableError(RuntimeError):
    """Raised when no API key is configured for the AI backend."""


def llm_available() -> bool:
    return bool(get_settings().openrouter_api_key)


_client: Optional[AsyncOpenAI] = None


def get_client() -> AsyncOpenAI:
    """Build the OpenRouter client once per process."""
    global _client
    if _client is None:
        settings = get_settings()
        if not settings.openrouter_api_key:
            raise LLMUnavailableError("OPENROUTER_API_KEY is not set")
        _client = AsyncOpenAI(
            base_url="https://openrouter.ai/api/v1",
            api_key=settings.openrouter_api_key,
            default_headers={
                "HTTP-Referer": APP_URL,
                "X-Title": APP_NAME,
            },
        )
    return _client


# --- Model Configuration ---
def model_config_for(task: str) -> dict:
    model = get_settings().ai_model
    return {
        "resume_summary": {"model": model, "temperature": 0.7, "max_tokens": 512},
        "resume_optimize": {"model": model, "temperature": 0.2, "max_tokens": 2048},
        "job_description": {"model": model, "temperature": 0.7, "max_tokens": 4096},
        "candidate_match": {"model": model, "temperature": 0.0, "top_p": 1, "max_tokens": 1024},
        "job_listings": {"model": model, "temperature": 0.9, "max_tokens": 8192},
    }[task]


COMMON_OPTS = {"seed": 123}


async def call_llm(
    system_prompt: str,
    user_prompt: str,
    model_config: dict,
    response_model: Optional[Type[BaseModel]] = None,
) -> Union[str, BaseModel]:
    """Send one chat completion.

    Returns the message text, or the parsed ``response_model`` instance when
    one is given. Raises ``ValueError`` when the model refuses or returns an
    empty message; API errors propagate as ``openai.OpenAIError``.
    """
    client = get_client()
    messages = [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]

    if response_model is None:
        response = await client.chat.completions.create(
            messages=messages, **model_config, **COMMON_OPTS
        )
        content = response.choices[0].message.content
        if not content:
            raise ValueError("Empty completion")
        return content.strip()

    response = await client.chat.completions.parse(
        messages=messages,
        response_format=response_model,
        **model_config,
        **COMMON_OPTS,
    )
    message = response.choices[0].message
    if message.parsed is None:
        raise ValueError(message.refusal or "Model returned no structured output")
    return message.parsed


# --- Specific LLM Interaction Functions --- #


async def call_llm_for_resume_summary(experience: str, skills: str) -> str:
    system_prompt = "You are a professional resume writer."
    user_prompt = (
        "Generate a professional 3-sentence resume summary for a candidate with the "
        f'following experience: "{experience}" and skills: "{skills}". '
        "Focus on achievements and metrics."
    )
    return await call_llm(
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        model_config=model_config_for("resume_summary"),
    )


async def call_llm_for_resume_optimization(resume_text: str, target_role: str) -> AIResumeData:
    system_prompt = "Act as an expert ATS (Applicant Tracking System) optimizer."
    user_prompt = f"""Review this resume content: "{resume_text}" for the job title: "{target_role}".

Return a JSON object with:
1. summary: a strong professional summary.
2. skills: a list of missing keywords/skills to add.
3. optimized_points: 3 optimized bullet points improving the original content."""

    optimized = await call_llm(
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        model_config=model_config_for("resume_optimize"),
        response_model=AIResumeData,
    )
    logger.info("Optimized resume content", target_role=target_role)
    return optimized


async def call_llm_for_job_description(title: str, company: str, key_requirements: str) -> str:
    system_prompt = "You are an experienced technical recruiter and employer-brand copywriter."
    user_prompt = f"""Write a compelling, inclusive job description for a "{title}" at "{company}".
Key requirements: {key_requirements}.
Include sections for: About Us, The Role, Requirements, and Why Join Us. Use Markdown formatting."""

    return await call_llm(
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        model_config=model_config_for("job_description"),
    )


async def call_llm_for_candidate_match(resume_text: str, job_description: str) -> MatchAnalysis:
    """Score one candidate resume against a job description (0-100)."""

    system_prompt = "You are an expert ATS (Applicant Tracking System) and Technical Recruiter."
    user_prompt = f"""Job Description: "{job_description[:MATCH_PROMPT_CHAR_LIMIT]}..."

Candidate Resume: "{resume_text[:MATCH_PROMPT_CHAR_LIMIT]}..."

Analyze the match.
1. score: assign an integer from 0-100 based on keyword matching, experience, and relevance.
2. reasoning: provide a 1-sentence reasoning for the score.
3. missing_keywords: list up to 3 critical keywords missing from the resume found in the JD."""

    return await call_llm(
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        model_config=model_config_for("candidate_match"),
        response_model=MatchAnalysis,
    )


async def call_llm_for_job_listings(platform: str, keyword: str, count: int) -> ScrapedJobListings:
    """Generate realistic listings as they would appear on ``platform``."""

    system_prompt = (
        "You are a job-market data generator. You produce realistic, varied job "
        "postings for the Indian job market as they would appear on a given portal."
    )
    user_prompt = f"""Generate {count} current job postings from {platform} matching the search "{keyword}".
For each posting return: title, company, location (city, India; add "(Remote)" when remote),
salary (INR range such as "₹12L - ₹18L"), type (one of Full-time, Part-time, Contract, Remote),
a 2-3 sentence description, and 3-5 short requirements."""

    return await call_llm(
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        model_config=model_config_for("job_listings"),
        response_model=ScrapedJobListings,
    )

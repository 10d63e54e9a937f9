from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # `.env.prod` takes priority over `.env`
        env_file=(".env", ".env.prod"),
        extra="ignore",
    )

    openrouter_api_key: Optional[str] = None
    ai_model: str = "google/gemini-2.5-flash"

    # Session tokens
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    session_ttl_minutes: int = 60 * 24
    auth_enabled: bool = True
    local_dev_role: str = "SEEKER"
    admin_emails: List[str] = []

    # Upper bound on concurrent match-scoring requests per ranking run
    ranking_concurrency: int = 5

    # Stripe billing settings (demo mode when unset)
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None

    # Application base URL (for constructing callback URLs etc.)
    app_base_url: str = "http://localhost:8000"  # Default for local dev


@lru_cache()
def get_settings() -> Settings:
    return Settings()

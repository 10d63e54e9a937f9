import os
import uuid

import pytest

# Must be set before the app (and its engine) is imported
TEST_DATABASE_URL = "sqlite:///./hiregen-test.db"
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["AWS_EMF_ENVIRONMENT"] = "Local"
os.environ["LOG_FORMAT"] = "console"
os.environ["AUTH_ENABLED"] = "true"
os.environ["OPENROUTER_API_KEY"] = ""
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["STRIPE_WEBHOOK_SECRET"] = ""

from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

# --- Alembic Imports ---
from alembic.config import Config
from alembic import command
# --- End Alembic Imports ---

# Import app and DB dependency function first
from main import app, get_db

import auth
import crud
import logic
import schemas
from database import Base, engine

TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def _remove_db_files(db_path: str) -> None:
    for path in (db_path, f"{db_path}-wal", f"{db_path}-shm"):
        if os.path.exists(path):
            try:
                os.unlink(path)
            except OSError as e:
                print(f"Error removing test database file {path}: {e}")


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Rebuild the test database from models and stamp with Alembic head."""
    db_path = TEST_DATABASE_URL.split("///")[-1]

    # main created the tables at import time; start from a clean schema
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    print("Stamping database with Alembic head revision")
    alembic_cfg = Config("alembic.ini")
    alembic_cfg.set_main_option("sqlalchemy.url", TEST_DATABASE_URL)
    command.stamp(alembic_cfg, "head")

    yield  # Tests run here

    engine.dispose()
    _remove_db_files(db_path)


@pytest.fixture(autouse=True)
def clear_llm_cache():
    logic.clear_llm_cache()
    yield
    logic.clear_llm_cache()


@pytest.fixture(scope="function")
def db_session(setup_test_database):
    """Yields a SQLAlchemy session directly from the test factory."""
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()


# Override the get_db dependency for tests
@pytest.fixture(scope="function")
def override_get_db():
    """Each API call gets its own session, as it would in production."""

    def _override_get_db():
        db = TestSessionLocal()
        try:
            yield db
        finally:
            db.close()

    original = app.dependency_overrides.get(get_db)
    app.dependency_overrides[get_db] = _override_get_db

    yield

    if original:
        app.dependency_overrides[get_db] = original
    else:
        del app.dependency_overrides[get_db]


@pytest.fixture(scope="function")
def test_client(override_get_db):
    """Provides a test client configured with our test database session."""
    client = TestClient(app)
    yield client
    # drop settings/user overrides a test may have installed
    for dependency in list(app.dependency_overrides):
        if dependency is not get_db:
            del app.dependency_overrides[dependency]


@pytest.fixture
def make_user(db_session):
    """Factory creating a committed user with a unique email."""

    def _make_user(role: str = "SEEKER", full_name: str = "Test User", password: str = "secret123"):
        email = f"{role.lower()}-{uuid.uuid4().hex[:10]}@example.com"
        user = crud.create_user(
            db_session,
            schemas.UserCreate(email=email, password=password, full_name=full_name),
            hashed_password=auth.hash_password(password),
            role=role,
        )
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def auth_headers():
    """Bearer headers for a user, as a signed-in client would send them."""

    def _auth_headers(user):
        return {"Authorization": f"Bearer {auth.create_session(user).access_token}"}

    return _auth_headers

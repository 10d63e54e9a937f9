import uuid
from unittest.mock import patch

from fastapi import status
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import auth
import crud
from main import app, get_settings
from settings import Settings


def _email(prefix: str = "user") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}@example.com"


def _signup(client: TestClient, email: str, role: str = "SEEKER", password: str = "secret123"):
    return client.post(
        "/auth/signup",
        json={"email": email, "password": password, "full_name": "Asha Verma", "role": role},
    )


def test_signup_returns_session_and_profile(test_client: TestClient):
    email = _email("signup")
    response = _signup(test_client, email, role="EMPLOYER")

    assert response.status_code == status.HTTP_201_CREATED
    body = response.json()
    assert body["token_type"] == "bearer"
    assert body["access_token"]
    assert body["user"]["email"] == email
    assert body["user"]["role"] == "EMPLOYER"
    assert body["user"]["avatar_url"].startswith("https://ui-avatars.com/api/?name=Asha%20Verma")
    assert "hashed_password" not in body["user"]


def test_signup_rejects_duplicate_email(test_client: TestClient):
    email = _email("dup")
    assert _signup(test_client, email).status_code == status.HTTP_201_CREATED

    response = _signup(test_client, email.upper())
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["detail"] == "Email already registered"


def test_signup_cannot_self_register_admin(test_client: TestClient):
    response = _signup(test_client, _email("admin"), role="ADMIN")
    assert response.status_code == status.HTTP_403_FORBIDDEN


def test_signup_validates_body(test_client: TestClient):
    response = test_client.post(
        "/auth/signup",
        json={"email": "not-an-email", "password": "123", "full_name": ""},
    )
    assert response.status_code == 422


def test_admin_emails_are_promoted(test_client: TestClient):
    email = _email("boss")
    app.dependency_overrides[get_settings] = lambda: Settings(admin_emails=[email])

    response = _signup(test_client, email)

    assert response.status_code == status.HTTP_201_CREATED
    assert response.json()["user"]["role"] == "ADMIN"


def test_signin_with_correct_and_wrong_password(test_client: TestClient):
    email = _email("signin")
    _signup(test_client, email, password="correct-horse")

    ok = test_client.post("/auth/signin", json={"email": email, "password": "correct-horse"})
    assert ok.status_code == status.HTTP_200_OK
    assert ok.json()["user"]["email"] == email

    bad = test_client.post("/auth/signin", json={"email": email, "password": "wrong-horse"})
    assert bad.status_code == status.HTTP_401_UNAUTHORIZED
    assert bad.json()["detail"] == "Invalid email or password"

    unknown = test_client.post("/auth/signin", json={"email": _email("ghost"), "password": "whatever"})
    assert unknown.status_code == status.HTTP_401_UNAUTHORIZED


def test_users_me_requires_valid_token(test_client: TestClient, make_user, auth_headers):
    user = make_user(full_name="Ravi Kumar")

    response = test_client.get("/users/me", headers=auth_headers(user))
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["full_name"] == "Ravi Kumar"

    assert test_client.get("/users/me").status_code == status.HTTP_401_UNAUTHORIZED
    garbage = test_client.get("/users/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert garbage.status_code == status.HTTP_401_UNAUTHORIZED


def test_session_info_and_signout(test_client: TestClient, make_user, auth_headers):
    user = make_user()
    headers = auth_headers(user)

    session = test_client.get("/auth/session", headers=headers)
    assert session.status_code == status.HTTP_200_OK
    assert session.json()["user"]["id"] == user.id
    assert session.json()["expires_at"] is not None

    signout = test_client.post("/auth/signout", headers=headers)
    assert signout.status_code == status.HTTP_200_OK
    assert signout.json() == {"status": "signed_out"}

    # the same token is now revoked
    assert test_client.get("/users/me", headers=headers).status_code == status.HTTP_401_UNAUTHORIZED
    # a fresh session still works
    assert test_client.get("/users/me", headers=auth_headers(user)).status_code == status.HTTP_200_OK


def test_role_gate_on_employer_endpoint(test_client: TestClient, make_user, auth_headers):
    seeker = make_user("SEEKER")
    response = test_client.post(
        "/jobs",
        json={"title": "Backend Engineer", "company": "Acme"},
        headers=auth_headers(seeker),
    )
    assert response.status_code == status.HTTP_403_FORBIDDEN


def test_signup_password_limit_counts_bytes(test_client: TestClient):
    # 40 characters but 80 bytes in UTF-8
    too_long = _signup(test_client, _email("accent"), password="é" * 40)
    assert too_long.status_code == 422

    at_limit = _signup(test_client, _email("accent"), password="é" * 36)
    assert at_limit.status_code == status.HTTP_201_CREATED


def test_signup_race_on_same_email_is_rejected(test_client: TestClient):
    email = _email("race")
    assert _signup(test_client, email).status_code == status.HTTP_201_CREATED

    # the existence check misses the row a concurrent request just wrote
    with patch("main.crud.get_user_by_email", return_value=None):
        response = _signup(test_client, email)

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["detail"] == "Email already registered"
    assert test_client.post("/auth/signin", json={"email": email, "password": "secret123"}).status_code == 200


# --- Local development mode (AUTH_ENABLED=false) --- #


def use_local_dev_mode():
    app.dependency_overrides[get_settings] = lambda: Settings(auth_enabled=False)


def test_local_dev_mode_needs_no_token(test_client: TestClient):
    use_local_dev_mode()

    first = test_client.get("/users/me")
    assert first.status_code == status.HTTP_200_OK
    assert first.json()["email"] == auth.LOCAL_DEV_EMAIL
    assert first.json()["role"] == "SEEKER"

    # the local user is created once and reused
    second = test_client.get("/users/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert second.json()["id"] == first.json()["id"]


def test_local_dev_session_and_signout(test_client: TestClient):
    use_local_dev_mode()

    session = test_client.get("/auth/session")
    assert session.status_code == status.HTTP_200_OK
    assert session.json()["user"]["email"] == auth.LOCAL_DEV_EMAIL
    assert session.json()["expires_at"] is None

    signout = test_client.post("/auth/signout")
    assert signout.status_code == status.HTTP_200_OK
    assert signout.json() == {"status": "signed_out"}


def test_local_dev_user_is_created_on_demand(db_session: Session):
    user = auth.local_dev_user(db_session)
    assert user.id is not None
    assert crud.get_user_by_email(db_session, auth.LOCAL_DEV_EMAIL).id == user.id
    assert auth.local_dev_user(db_session).id == user.id

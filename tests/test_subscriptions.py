import json
from datetime import timedelta
from typing import Optional
from unittest.mock import MagicMock, patch

import pytest
import stripe
from fastapi import status
from fastapi.testclient import TestClient
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import crud
import logic
import plans
from main import app, get_settings
from models import SubscriptionStatus, utcnow
from settings import Settings

# Mock settings for Stripe configuration
MOCK_SETTINGS = Settings(
    stripe_secret_key="sk_test_123",
    stripe_webhook_secret="whsec_test_123",
    app_base_url="http://testserver",
    openrouter_api_key=None,
)


def use_stripe_settings():
    app.dependency_overrides[get_settings] = lambda: MOCK_SETTINGS


def active_rows(db: Session, user_id: int):
    db.expire_all()
    return [
        s for s in crud.get_subscriptions_for_user(db, user_id)
        if s.status == SubscriptionStatus.ACTIVE
    ]


# --- Plans catalogue --- #


def test_plans_catalogue(test_client: TestClient):
    all_plans = test_client.get("/plans").json()
    assert [p["id"] for p in all_plans] == [p.id for p in plans.PRICING_PLANS]

    employer_plans = test_client.get("/plans", params={"target": "EMPLOYER"}).json()
    assert {p["id"] for p in employer_plans} == {"employer-starter", "employer-pro"}


def test_plans_for_role():
    assert [p.id for p in plans.plans_for_role("SEEKER")] == ["free", "resume-pro", "career-boost"]
    assert [p.id for p in plans.plans_for_role("COLLEGE")] == ["free", "resume-pro", "career-boost"]
    assert [p.id for p in plans.plans_for_role("EMPLOYER")] == ["free", "employer-starter", "employer-pro"]
    assert plans.plans_for_role("ADMIN") == []


def test_landing_page_lists_seeker_plans(test_client: TestClient):
    response = test_client.get("/", params={"theme": "dark"})
    assert response.status_code == status.HTTP_200_OK
    assert 'data-theme="dark"' in response.text
    assert "Resume Pro" in response.text
    assert "Hiring Pro" not in response.text


# --- Demo-mode upgrades --- #


def test_new_user_is_on_free_plan(test_client: TestClient, make_user, auth_headers):
    response = test_client.get("/subscriptions/me", headers=auth_headers(make_user()))
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["plan"]["id"] == "free"
    assert response.json()["subscription"] is None


def test_demo_upgrade_activates_plan(test_client: TestClient, db_session: Session, make_user, auth_headers):
    user = make_user()
    headers = auth_headers(user)

    response = test_client.post("/subscriptions/upgrade", json={"plan_id": "resume-pro"}, headers=headers)

    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["status"] == "active"
    assert body["checkout_url"] is None
    assert body["subscription"]["plan_id"] == "resume-pro"

    current = test_client.get("/subscriptions/me", headers=headers).json()
    assert current["plan"]["id"] == "resume-pro"

    subscription = crud.get_active_subscription(db_session, user.id)
    term = logic._as_utc(subscription.end_date) - logic._as_utc(subscription.start_date)
    assert term == timedelta(days=plans.PLAN_DURATION_DAYS)


def test_only_one_active_subscription_after_upgrades(test_client: TestClient, db_session: Session, make_user, auth_headers):
    user = make_user()
    headers = auth_headers(user)

    for plan_id in ("resume-pro", "career-boost", "free", "resume-pro"):
        response = test_client.post("/subscriptions/upgrade", json={"plan_id": plan_id}, headers=headers)
        assert response.status_code == status.HTTP_200_OK

    active = active_rows(db_session, user.id)
    assert [s.plan_id for s in active] == ["resume-pro"]
    history = crud.get_subscriptions_for_user(db_session, user.id)
    assert len(history) == 4
    cancelled = [s for s in history if s.status == SubscriptionStatus.CANCELLED]
    assert len(cancelled) == 3
    assert all(s.end_date is not None for s in cancelled)


def test_store_enforces_one_active_subscription(db_session: Session, make_user):
    user = make_user()
    crud.create_subscription(db_session, user.id, "resume-pro")
    db_session.commit()

    with pytest.raises(IntegrityError):
        crud.create_subscription(db_session, user.id, "career-boost")
    db_session.rollback()


def test_upgrade_rejections(test_client: TestClient, make_user, auth_headers):
    seeker_headers = auth_headers(make_user("SEEKER"))

    unknown = test_client.post("/subscriptions/upgrade", json={"plan_id": "platinum"}, headers=seeker_headers)
    assert unknown.status_code == status.HTTP_404_NOT_FOUND

    wrong_role = test_client.post("/subscriptions/upgrade", json={"plan_id": "employer-pro"}, headers=seeker_headers)
    assert wrong_role.status_code == status.HTTP_400_BAD_REQUEST

    already_free = test_client.post("/subscriptions/upgrade", json={"plan_id": "free"}, headers=seeker_headers)
    assert already_free.status_code == status.HTTP_400_BAD_REQUEST

    assert test_client.post(
        "/subscriptions/upgrade", json={"plan_id": "resume-pro"}, headers=seeker_headers
    ).status_code == status.HTTP_200_OK
    again = test_client.post("/subscriptions/upgrade", json={"plan_id": "resume-pro"}, headers=seeker_headers)
    assert again.status_code == status.HTTP_400_BAD_REQUEST
    assert again.json()["detail"] == "You are already on the Resume Pro plan"


def test_expired_subscription_falls_back_to_free(test_client: TestClient, db_session: Session, make_user, auth_headers):
    user = make_user("EMPLOYER")
    subscription = crud.create_subscription(db_session, user.id, "employer-starter", duration_days=30)
    subscription.start_date = utcnow() - timedelta(days=45)
    subscription.end_date = utcnow() - timedelta(days=15)
    db_session.commit()

    response = test_client.get("/subscriptions/me", headers=auth_headers(user))

    assert response.json()["plan"]["id"] == "free"
    db_session.refresh(subscription)
    assert subscription.status == SubscriptionStatus.EXPIRED


# --- Stripe checkout --- #


def test_upgrade_creates_checkout_session(test_client: TestClient, db_session: Session, make_user, auth_headers):
    user = make_user("EMPLOYER")
    use_stripe_settings()
    expected_checkout_url = "https://checkout.stripe.com/pay/cs_test_123"

    with patch("main.stripe.checkout.Session.create") as mock_stripe_create:
        mock_session = MagicMock()
        mock_session.id = "cs_test_123"
        mock_session.url = expected_checkout_url
        mock_stripe_create.return_value = mock_session

        response = test_client.post(
            "/subscriptions/upgrade", json={"plan_id": "employer-pro"}, headers=auth_headers(user)
        )

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"status": "pending", "subscription": None, "checkout_url": expected_checkout_url}

    mock_stripe_create.assert_called_once()
    call_kwargs = mock_stripe_create.call_args.kwargs
    price_data = call_kwargs["line_items"][0]["price_data"]
    assert price_data["currency"] == "inr"
    assert price_data["unit_amount"] == 999900
    assert call_kwargs["mode"] == "payment"
    assert call_kwargs["metadata"] == {"user_id": str(user.id), "plan_id": "employer-pro"}
    assert call_kwargs["success_url"].startswith(MOCK_SETTINGS.app_base_url)
    assert call_kwargs["cancel_url"].startswith(MOCK_SETTINGS.app_base_url)

    # nothing is activated until the webhook arrives
    assert crud.get_active_subscription(db_session, user.id) is None


# --- Webhook Tests --- #


def create_mock_stripe_event(event_type: str, user_id: Optional[int] = None, plan_id: str = "resume-pro") -> dict:
    metadata = {"user_id": str(user_id), "plan_id": plan_id} if user_id else {}
    return {
        "id": "evt_test_webhook",
        "object": "event",
        "type": event_type,
        "data": {
            "object": {
                "id": "cs_test_123",
                "object": "checkout.session",
                "payment_status": "paid",
                "metadata": metadata,
            }
        },
    }


def post_webhook(client: TestClient, event: dict):
    payload = json.dumps(event).encode("utf-8")
    headers = {"Stripe-Signature": "t=123,v1=dummy_signature"}
    with patch("main.stripe.Webhook.construct_event", return_value=event):
        return client.post("/billing/webhook", content=payload, headers=headers)


def test_stripe_webhook_activates_plan(test_client: TestClient, db_session: Session, make_user):
    user = make_user()
    crud.create_subscription(db_session, user.id, "career-boost", duration_days=30)
    db_session.commit()
    use_stripe_settings()

    response = post_webhook(test_client, create_mock_stripe_event("checkout.session.completed", user.id))

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"status": "success"}
    assert [s.plan_id for s in active_rows(db_session, user.id)] == ["resume-pro"]


def test_stripe_webhook_invalid_signature(test_client: TestClient):
    use_stripe_settings()
    payload = json.dumps(create_mock_stripe_event("checkout.session.completed", 999)).encode("utf-8")

    with patch("main.stripe.Webhook.construct_event") as mock_construct_event:
        mock_construct_event.side_effect = stripe.SignatureVerificationError("Invalid signature", "sig_header")
        response = test_client.post(
            "/billing/webhook", content=payload, headers={"Stripe-Signature": "t=123,v1=invalid_signature"}
        )

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert "Invalid signature" in response.json()["detail"]


def test_stripe_webhook_missing_user_id(test_client: TestClient):
    use_stripe_settings()

    response = post_webhook(test_client, create_mock_stripe_event("checkout.session.completed", user_id=None))

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["status"] == "error"
    assert "Missing user_id" in response.json()["detail"]


def test_stripe_webhook_user_not_found(test_client: TestClient, db_session: Session):
    use_stripe_settings()
    non_existent_user_id = 99999

    response = post_webhook(test_client, create_mock_stripe_event("checkout.session.completed", non_existent_user_id))

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"status": "success"}
    assert crud.get_active_subscription(db_session, non_existent_user_id) is None


def test_stripe_webhook_unhandled_event(test_client: TestClient):
    use_stripe_settings()

    response = post_webhook(test_client, create_mock_stripe_event("payment_intent.succeeded"))

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"status": "success"}


def test_stripe_webhook_requires_configuration(test_client: TestClient):
    response = test_client.post("/billing/webhook", content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"})
    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR

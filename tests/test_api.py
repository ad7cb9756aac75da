import hashlib
import hmac
import json
import uuid

import httpx
import pytest

from app.api.payment import get_chapa_client
from app.common.messaging import get_notification_sink
from app.common.site_enums import NotificationType, PaymentStatus, SubscriptionStatus, UserRole
from app.config.config import get_settings
from app.data.dbinit import get_db
from app.data.payment import PaymentTransaction, PaymentWebhookEvent
from app.data.subscription import Subscription
from main import app as api_app

API = "/api/v1"


@pytest.fixture
async def client(session_factory, settings, chapa, sink):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    api_app.dependency_overrides[get_db] = override_get_db
    api_app.dependency_overrides[get_settings] = lambda: settings
    api_app.dependency_overrides[get_chapa_client] = lambda: chapa
    api_app.dependency_overrides[get_notification_sink] = lambda: sink

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=api_app), base_url="http://test") as c:
        yield c
    api_app.dependency_overrides.clear()


@pytest.fixture
async def owner(plans, make_user, make_subscription):
    user = await make_user()
    await make_subscription(user, plans["bronze"])
    return user


def signed(event, tx_ref, reference="APx91"):
    body = json.dumps({"event": event, "data": {"tx_ref": tx_ref, "reference": reference, "status": "success"}})
    signature = hmac.new(b"whsec_test_secret", body.encode(), hashlib.sha256).hexdigest()
    return body, {"Chapa-Signature": signature, "Content-Type": "application/json"}


async def start_checkout(client, owner, auth_headers, plan_slug="silver"):
    response = await client.post(
        f"{API}/owner/payment/initiate", json={"plan_slug": plan_slug}, headers=auth_headers(owner)
    )
    assert response.status_code == 200
    return response.json()


# ----------------------------------------------------------------------
# Webhook
# ----------------------------------------------------------------------


async def test_webhook_without_signature(client):
    response = await client.post(f"{API}/payment/chapa/webhook", content=b'{"event": "payment.success"}')
    assert response.status_code == 401


async def test_webhook_with_bad_signature(client, fetch_all):
    body, headers = signed("payment.success", "tx_abc")
    headers["Chapa-Signature"] = "0" * 64

    response = await client.post(f"{API}/payment/chapa/webhook", content=body, headers=headers)

    assert response.status_code == 401
    assert await fetch_all(PaymentWebhookEvent) == []


async def test_webhook_with_non_ascii_signature(client, fetch_all):
    body, _ = signed("payment.success", "tx_abc")

    response = await client.post(
        f"{API}/payment/chapa/webhook",
        content=body,
        headers=[(b"Chapa-Signature", b"\xe9abc"), (b"Content-Type", b"application/json")],
    )

    assert response.status_code == 401
    assert await fetch_all(PaymentWebhookEvent) == []


async def test_webhook_success_and_duplicate(client, owner, auth_headers, sink, fetch_all):
    checkout = await start_checkout(client, owner, auth_headers)
    body, headers = signed("payment.success", checkout["tx_ref"])

    first = await client.post(f"{API}/payment/chapa/webhook", content=body, headers=headers)
    assert first.status_code == 200
    assert first.json()["duplicate"] is False
    assert first.json()["detail"]["handled"] is True

    second = await client.post(f"{API}/payment/chapa/webhook", content=body, headers=headers)
    assert second.status_code == 200
    assert second.json()["duplicate"] is True

    [tx] = await fetch_all(PaymentTransaction, tx_ref=checkout["tx_ref"])
    assert tx.status == PaymentStatus.COMPLETED.value
    assert len(sink.of_type(NotificationType.PAYMENT_SUCCESS)) == 1


async def test_webhook_processing_error_is_acknowledged(client, plans):
    body, headers = signed("payment.failed", "tx_unknown")

    response = await client.post(f"{API}/payment/chapa/webhook", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json()["error"] == "Payment transaction not found"


# ----------------------------------------------------------------------
# Return pages
# ----------------------------------------------------------------------


@pytest.mark.parametrize("param", ["trx_ref", "tx_ref", "reference"])
async def test_return_page_reconciles(client, owner, auth_headers, fake_chapa, fetch_all, param):
    checkout = await start_checkout(client, owner, auth_headers)
    fake_chapa.verify_results[checkout["tx_ref"]] = ("success", "APret1")

    response = await client.get("/payment/success", params={param: checkout["tx_ref"]})

    assert response.status_code == 200
    assert "Payment successful" in response.text
    [tx] = await fetch_all(PaymentTransaction, tx_ref=checkout["tx_ref"])
    assert tx.status == PaymentStatus.COMPLETED.value
    assert tx.provider_transaction_ref == "APret1"


async def test_return_page_with_malformed_verify_reply(client, owner, auth_headers, fake_chapa, fetch_all):
    checkout = await start_checkout(client, owner, auth_headers)
    fake_chapa.raw_bodies["verify"] = {"status": "success", "data": ["x"]}

    response = await client.get("/payment/success", params={"trx_ref": checkout["tx_ref"]})

    assert response.status_code == 500
    assert "could not verify" in response.text
    [tx] = await fetch_all(PaymentTransaction, tx_ref=checkout["tx_ref"])
    assert tx.status == PaymentStatus.PENDING.value


async def test_return_page_without_reference(client):
    response = await client.get("/payment/success")
    assert response.status_code == 400
    assert "No transaction reference" in response.text


async def test_return_page_unpaid(client, owner, auth_headers, fetch_all):
    checkout = await start_checkout(client, owner, auth_headers)

    response = await client.get("/payment/success", params={"trx_ref": checkout["tx_ref"]})

    assert response.status_code == 200
    assert "Payment failed" in response.text
    [tx] = await fetch_all(PaymentTransaction, tx_ref=checkout["tx_ref"])
    assert tx.status == PaymentStatus.PENDING.value


async def test_cancel_page(client):
    response = await client.get("/payment/cancel", params={"trx_ref": "tx_<b>"})
    assert response.status_code == 200
    assert "Payment cancelled" in response.text
    assert "tx_&lt;b&gt;" in response.text


# ----------------------------------------------------------------------
# Owner endpoints
# ----------------------------------------------------------------------


async def test_tier_limit_is_forbidden(client, owner, auth_headers):
    created = await client.post(f"{API}/restaurants", json={"name": "Habesha House"}, headers=auth_headers(owner))
    assert created.status_code == 201
    assert created.json()["slug"] == "habesha-house"

    blocked = await client.post(f"{API}/restaurants", json={"name": "Second"}, headers=auth_headers(owner))

    assert blocked.status_code == 403
    body = blocked.json()
    assert body["error"] == "TierLimitExceeded"
    assert body["resource"] == "restaurant"
    assert body["current"] == 1
    assert body["limit"] == 1


async def test_no_subscription_is_payment_required(client, plans, make_user, auth_headers):
    user = await make_user()
    response = await client.post(f"{API}/restaurants", json={"name": "Nowhere"}, headers=auth_headers(user))
    assert response.status_code == 402
    assert response.json()["error"] == "SubscriptionInactive"


async def test_list_plans(client, plans):
    response = await client.get(f"{API}/subscription/plans")
    assert response.status_code == 200
    assert [p["slug"] for p in response.json()] == ["free-trial", "free", "bronze", "silver", "gold"]


async def test_my_subscription(client, owner, auth_headers):
    response = await client.get(f"{API}/subscription/me", headers=auth_headers(owner))
    assert response.status_code == 200
    body = response.json()
    assert body["plan_slug"] == "bronze"
    assert body["features"]["max_menu_items"] == 3
    assert "decode_failed" not in body["features"]


async def test_staff_cannot_use_owner_endpoints(client, owner, make_user, auth_headers):
    staff = await make_user(UserRole.STAFF, owner_id=owner.user_id)
    response = await client.get(f"{API}/subscription/me", headers=auth_headers(staff))
    assert response.status_code == 403


async def test_initiate_unknown_plan(client, owner, auth_headers):
    response = await client.post(
        f"{API}/owner/payment/initiate", json={"plan_slug": "platinum"}, headers=auth_headers(owner)
    )
    assert response.status_code == 400
    assert response.json()["field"] == "plan_slug"


async def test_initiate_provider_down(client, owner, auth_headers, fake_chapa):
    fake_chapa.fail_initialize = True
    response = await client.post(
        f"{API}/owner/payment/initiate", json={"plan_slug": "gold"}, headers=auth_headers(owner)
    )
    assert response.status_code == 502


async def test_initiate_with_malformed_provider_reply(client, owner, auth_headers, fake_chapa):
    fake_chapa.raw_bodies["initialize"] = {"status": "success", "data": "oops"}
    response = await client.post(
        f"{API}/owner/payment/initiate", json={"plan_slug": "gold"}, headers=auth_headers(owner)
    )
    assert response.status_code == 502
    assert response.json()["operation"] == "initialize"


async def test_requests_need_a_token(client, plans):
    response = await client.get(f"{API}/subscription/me")
    assert response.status_code == 401


# ----------------------------------------------------------------------
# Accounts
# ----------------------------------------------------------------------


async def test_register_on_paid_plan(client, plans):
    response = await client.post(
        f"{API}/users/register",
        json={
            "email": "new.owner@example.com",
            "full_name": "Meron Alemu",
            "password": "Secret123",
            "plan_slug": "silver",
        },
    )
    assert response.status_code == 201
    body = response.json()
    assert body["subscription_status"] == SubscriptionStatus.INCOMPLETE.value
    assert body["checkout_url"].startswith("https://checkout.chapa.co/")
    assert body["user"]["is_active"] is False


async def test_register_duplicate_email(client, plans, make_user):
    await make_user(email="taken@example.com")
    response = await client.post(
        f"{API}/users/register",
        json={"email": "taken@example.com", "full_name": "Someone", "password": "Secret123"},
    )
    assert response.status_code == 409
    assert "context" not in response.json()


async def test_login(client, owner):
    response = await client.post(
        f"{API}/auth/token", data={"username": owner.email, "password": "Passw0rd!"}
    )
    assert response.status_code == 200
    assert response.json()["token_type"] == "bearer"


async def test_admin_activation_starts_trial(client, plans, make_user, auth_headers, fetch_all):
    admin = await make_user(UserRole.ADMIN)
    pending = await make_user(is_active=False)

    response = await client.post(f"{API}/users/{pending.user_id}/activate", headers=auth_headers(admin))

    assert response.status_code == 200
    assert response.json()["is_active"] is True
    [sub] = await fetch_all(Subscription, owner_id=pending.user_id)
    assert sub.status == SubscriptionStatus.TRIALING.value
    assert sub.is_current is True


async def test_activate_unknown_user(client, plans, make_user, auth_headers):
    admin = await make_user(UserRole.ADMIN)
    response = await client.post(f"{API}/users/{uuid.uuid4()}/activate", headers=auth_headers(admin))
    assert response.status_code == 404
    assert "context" not in response.json()


async def test_activation_is_admin_only(client, owner, auth_headers):
    response = await client.post(f"{API}/users/{owner.user_id}/activate", headers=auth_headers(owner))
    assert response.status_code == 403

from datetime import datetime, timedelta, timezone

from sqlalchemy import update

from streamvault.core.database import get_db_session, webhook_events
from streamvault.features.billing.provider import INVOICE_PAYMENT_FAILED
from streamvault.features.billing.reconciler import FAILED, record_event
from streamvault.tests.mocks import event_body


def test_admin_routes_disabled_without_key(client, monkeypatch):
    monkeypatch.delenv("ADMIN_KEY", raising=False)

    resp = client.get("/admin/ledger/summary", headers={"X-Admin-Key": "anything"})

    assert resp.status_code == 403


def test_admin_key_required(client, monkeypatch):
    monkeypatch.setenv("ADMIN_KEY", "test-admin-secret")

    assert client.get("/admin/ledger/summary").status_code == 401
    assert client.get("/admin/ledger/summary", headers={"X-Admin-Key": "wrong"}).status_code == 401


def test_ledger_summary_route(client, subscribe, monkeypatch):
    monkeypatch.setenv("ADMIN_KEY", "test-admin-secret")
    subscribe(plan_id="standard")

    resp = client.get("/admin/ledger/summary", params={"windowDays": 7}, headers={"X-Admin-Key": "test-admin-secret"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["activeSubscriptions"] == 1
    assert body["monthlyRecurringRevenueCents"] == 1299


def test_replay_route_applies_due_events(client, fake_provider, subscribe, monkeypatch):
    monkeypatch.setenv("ADMIN_KEY", "test-admin-secret")
    sub = subscribe()
    now = datetime.now(timezone.utc)
    body = event_body("evt_1", INVOICE_PAYMENT_FAILED, now, subscription_id=sub["subscription_id"])
    event = fake_provider.parse_webhook(fake_provider.signed_headers(), body)
    record_event(event, body, now - timedelta(minutes=5))
    with get_db_session() as session:
        session.execute(
            update(webhook_events).values(status=FAILED, attempt_count=1, next_attempt_at=now - timedelta(minutes=1))
        )

    resp = client.post("/admin/webhooks/replay", headers={"X-Admin-Key": "test-admin-secret"})

    assert resp.status_code == 200
    assert resp.json()["processed"] == 1
    assert resp.json()["backlog"] == 0

from datetime import timedelta

from sqlalchemy import select, func

from streamvault.core.database import get_db_session, download_licenses, saga_intents
from streamvault.features.downloads.service import issue_download_license
from streamvault.features.signup.service import create_signup_intent
from streamvault.workers.cleanup_entitlements import (
    expire_stale_licenses,
    purge_expired_intents,
    purge_old_licenses,
    run_cleanup,
)


def _states():
    with get_db_session() as session:
        return [row.state for row in session.execute(select(download_licenses.c.state)).fetchall()]


def test_expire_then_purge_licenses(subscribe, now):
    user_id = subscribe(now=now)["user_id"]
    issue_download_license(user_id, "ep-1", now=now)
    issue_download_license(user_id, "ep-2", now=now)

    assert expire_stale_licenses(now + timedelta(minutes=1))["expired"] == 0
    assert expire_stale_licenses(now + timedelta(hours=1), batch_size=1)["expired"] == 2
    assert _states() == ["EXPIRED", "EXPIRED"]

    assert purge_old_licenses(now + timedelta(days=10))["deleted"] == 0
    assert purge_old_licenses(now + timedelta(days=100))["deleted"] == 2
    assert _states() == []


def test_abandoned_intents_are_purged(fake_provider, now):
    create_signup_intent(
        email="viewer@example.com", name="Viewer", plan_id="standard",
        payment_method_id="pm_card_visa", now=now,
    )

    assert purge_expired_intents(now + timedelta(minutes=5))["deleted"] == 0
    assert purge_expired_intents(now + timedelta(hours=1))["deleted"] == 1
    with get_db_session() as session:
        assert session.execute(select(func.count()).select_from(saga_intents)).scalar() == 0


def test_run_cleanup_reports_all_jobs(now):
    assert run_cleanup(now) == {"licenses_expired": 0, "licenses_purged": 0, "intents_purged": 0}


def test_webhook_replay_worker_with_empty_queue():
    from streamvault.workers.webhook_replay import run_once

    assert run_once() == {"claimed": 0, "processed": 0, "ignored": 0, "failed": 0, "backlog": 0}

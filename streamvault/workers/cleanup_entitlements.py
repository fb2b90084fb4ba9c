"""Table hygiene for licenses and saga intents.

Correctness never depends on these jobs: redemption and quota checks look
at expires_at themselves. They keep states accurate for reporting and keep
tables small.
"""
from datetime import datetime, timedelta, timezone
import logging
from typing import Optional

from sqlalchemy import delete, select, update

from streamvault.core.config import settings
from streamvault.core.database import download_licenses, saga_intents, get_db_session
from streamvault.models.license import LicenseState

logger = logging.getLogger("streamvault.cleanup.entitlements")

MAX_ROWS_PER_RUN = 2000
LICENSE_RETENTION_DAYS = 90


def _batches(batch_size: Optional[int]) -> tuple:
    size = batch_size or settings.DOWNLOAD_JOBS_BATCH_SIZE
    return size, max(1, MAX_ROWS_PER_RUN // size)


def expire_stale_licenses(now: Optional[datetime] = None, *, batch_size: Optional[int] = None) -> dict:
    """Move ISSUED and REDEEMED licenses past expires_at to EXPIRED, in batches."""
    ts = now or datetime.now(timezone.utc)
    size, max_batches = _batches(batch_size)
    expired = 0

    for _ in range(max_batches):
        with get_db_session() as session:
            ids = [
                row.id for row in session.execute(
                    select(download_licenses.c.id)
                    .where(download_licenses.c.state.in_((LicenseState.ISSUED.value, LicenseState.REDEEMED.value)))
                    .where(download_licenses.c.expires_at <= ts)
                    .limit(size)
                ).fetchall()
            ]
            if not ids:
                break
            result = session.execute(
                update(download_licenses)
                .where(download_licenses.c.id.in_(ids))
                # Re-check state: a concurrent redemption may have moved the row
                .where(download_licenses.c.state.in_((LicenseState.ISSUED.value, LicenseState.REDEEMED.value)))
                .where(download_licenses.c.expires_at <= ts)
                .values(state=LicenseState.EXPIRED.value, updated_at=ts)
            )
            expired += result.rowcount or 0
        if len(ids) < size:
            break

    logger.info("[cleanup] licenses expired", extra={"expired": expired})
    return {"expired": expired}


def purge_old_licenses(now: Optional[datetime] = None, *, retention_days: Optional[int] = None, batch_size: Optional[int] = None) -> dict:
    """Delete EXPIRED and REVOKED licenses untouched for longer than the retention window."""
    ts = now or datetime.now(timezone.utc)
    days = retention_days if retention_days is not None else LICENSE_RETENTION_DAYS
    cutoff = ts - timedelta(days=days)
    size, max_batches = _batches(batch_size)
    deleted = 0

    for _ in range(max_batches):
        with get_db_session() as session:
            ids = [
                row.id for row in session.execute(
                    select(download_licenses.c.id)
                    .where(download_licenses.c.state.in_((LicenseState.EXPIRED.value, LicenseState.REVOKED.value)))
                    .where(download_licenses.c.updated_at < cutoff)
                    .limit(size)
                ).fetchall()
            ]
            if not ids:
                break
            result = session.execute(delete(download_licenses).where(download_licenses.c.id.in_(ids)))
            deleted += result.rowcount or 0
        if len(ids) < size:
            break

    logger.info("[cleanup] licenses purged", extra={"retention_days": days, "deleted": deleted})
    return {"retention_days": days, "deleted": deleted}


def purge_expired_intents(now: Optional[datetime] = None) -> dict:
    """Delete saga intents past their TTL (completed or abandoned)."""
    ts = now or datetime.now(timezone.utc)
    with get_db_session() as session:
        result = session.execute(delete(saga_intents).where(saga_intents.c.expires_at <= ts))
        deleted = result.rowcount or 0

    logger.info("[cleanup] saga intents purged", extra={"deleted": deleted})
    return {"deleted": deleted}


def run_cleanup(now: Optional[datetime] = None) -> dict:
    ts = now or datetime.now(timezone.utc)
    return {
        "licenses_expired": expire_stale_licenses(ts)["expired"],
        "licenses_purged": purge_old_licenses(ts)["deleted"],
        "intents_purged": purge_expired_intents(ts)["deleted"],
    }


if __name__ == "__main__":
    result = run_cleanup()
    print(result)

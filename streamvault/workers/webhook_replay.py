"""Periodic webhook replay: run from cron or a scheduler loop."""
import logging

from streamvault.core.config import settings
from streamvault.core.logging import configure_logging
from streamvault.features.billing.retry_service import replay_due_events

logger = logging.getLogger("streamvault.workers.webhook_replay")


def run_once(limit: int = 50) -> dict:
    stats = replay_due_events(limit=limit)
    if stats["failed"]:
        logger.warning("[webhook_replay] events still failing", extra={"failed": stats["failed"]})
    return stats


if __name__ == "__main__":
    configure_logging(settings.ENV)
    print(run_once())

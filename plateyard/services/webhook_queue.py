import logging
from dataclasses import asdict, dataclass
from datetime import datetime

import httpx
from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from plateyard.core.errors import InvalidRequest, NotFound
from plateyard.models.webhook import WebhookQueueEntry
from plateyard.services.webhook_notifier import (
    claim_entry,
    deliver_claimed,
    get_settings,
    utcnow,
)

logger = logging.getLogger("plateyard.webhooks.queue")

DEFAULT_BATCH_SIZE = 10


@dataclass
class QueueRun:
    processed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def due_entries(
    db: Session, limit: int = DEFAULT_BATCH_SIZE, now: datetime | None = None
) -> list[WebhookQueueEntry]:
    now = now or utcnow()
    return (
        db.query(WebhookQueueEntry)
        .filter(
            WebhookQueueEntry.status == "queued",
            or_(
                WebhookQueueEntry.next_retry_at.is_(None),
                WebhookQueueEntry.next_retry_at <= now,
            ),
        )
        .order_by(WebhookQueueEntry.created_at.asc(), WebhookQueueEntry.id.asc())
        .limit(limit)
        .all()
    )


def process_webhook_queue(
    db: Session,
    http: httpx.Client,
    limit: int = DEFAULT_BATCH_SIZE,
    now: datetime | None = None,
) -> QueueRun:
    """
    Deliver due entries one at a time. Safe to run concurrently: each entry is
    claimed before delivery and entries claimed elsewhere are skipped.
    """
    run = QueueRun()
    entries = due_entries(db, limit, now)
    if not entries:
        return run

    settings = get_settings(db)
    for entry in entries:
        if not claim_entry(db, entry.id):
            run.skipped += 1
            continue

        run.processed += 1
        result = deliver_claimed(db, http, entry, settings)
        if result.success:
            run.sent += 1
        elif entry.status == "failed":
            run.failed += 1
        else:
            run.retried += 1

    logger.info("webhook queue run: %s", run.as_dict())
    return run


def requeue_stuck_entry(db: Session, entry_id: int) -> WebhookQueueEntry:
    """
    Put an entry left in `processing` (its worker died mid-delivery) back in
    the queue. Attempts are kept, so the retry limit still holds.
    """
    entry = db.query(WebhookQueueEntry).filter(WebhookQueueEntry.id == entry_id).first()
    if not entry:
        raise NotFound("Queue entry not found")

    result = db.execute(
        update(WebhookQueueEntry)
        .where(WebhookQueueEntry.id == entry_id, WebhookQueueEntry.status == "processing")
        .values(status="queued", next_retry_at=utcnow(), updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        raise InvalidRequest(
            f"Only entries stuck in processing can be requeued (status is {entry.status})"
        )

    db.refresh(entry)
    logger.warning("webhook queue entry %s requeued by admin", entry_id)
    return entry

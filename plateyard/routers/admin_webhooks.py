import httpx
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from plateyard.core.admin import require_admin
from plateyard.core.deps import get_http_client
from plateyard.db.session import get_db
from plateyard.models.webhook import WebhookLogEntry, WebhookQueueEntry
from plateyard.schemas.webhook import (
    LogEntryOut,
    QueueEntryOut,
    QueueRunOut,
    WebhookSettingsIn,
    WebhookSettingsOut,
    WebhookStatsOut,
)
from plateyard.services import webhook_notifier
from plateyard.services.webhook_queue import process_webhook_queue, requeue_stuck_entry

router = APIRouter(
    prefix="/admin/webhooks", tags=["admin"], dependencies=[Depends(require_admin)]
)


@router.get("/settings", response_model=WebhookSettingsOut)
def get_settings(db: Session = Depends(get_db)):
    return WebhookSettingsOut(**webhook_notifier.get_settings(db).public())


@router.patch("/settings", response_model=WebhookSettingsOut)
def update_settings(payload: WebhookSettingsIn, db: Session = Depends(get_db)):
    updated = webhook_notifier.update_settings(db, payload.model_dump(exclude_unset=True))
    return WebhookSettingsOut(**updated.public())


@router.get("/stats", response_model=WebhookStatsOut)
def stats(db: Session = Depends(get_db)):
    return WebhookStatsOut(**webhook_notifier.get_webhook_stats(db))


@router.get("/logs", response_model=list[LogEntryOut])
def logs(
    limit: int = Query(50, ge=1, le=500),
    order_id: int | None = None,
    db: Session = Depends(get_db),
):
    q = db.query(WebhookLogEntry)
    if order_id is not None:
        q = q.filter(WebhookLogEntry.order_id == order_id)
    rows = q.order_by(WebhookLogEntry.created_at.desc(), WebhookLogEntry.id.desc()).limit(limit).all()
    return [LogEntryOut.model_validate(r) for r in rows]


@router.get("/queue", response_model=list[QueueEntryOut])
def queue(
    status: str | None = None,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    q = db.query(WebhookQueueEntry)
    if status:
        q = q.filter(WebhookQueueEntry.status == status)
    rows = q.order_by(WebhookQueueEntry.created_at.desc(), WebhookQueueEntry.id.desc()).limit(limit).all()
    return [QueueEntryOut.model_validate(r) for r in rows]


@router.post("/process-queue", response_model=QueueRunOut)
def process_queue(
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    http: httpx.Client = Depends(get_http_client),
):
    run = process_webhook_queue(db, http, limit)
    return QueueRunOut(
        **run.as_dict(),
        message=f"Processed {run.processed} queued webhooks",
        timestamp=webhook_notifier.utcnow(),
    )


@router.post("/queue/{entry_id}/requeue", response_model=QueueEntryOut)
def requeue(entry_id: int, db: Session = Depends(get_db)):
    return QueueEntryOut.model_validate(requeue_stuck_entry(db, entry_id))

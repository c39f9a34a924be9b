import logging

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from plateyard.core.config import settings
from plateyard.core.deps import get_http_client
from plateyard.core.security import secrets_match
from plateyard.db.session import get_db
from plateyard.schemas.webhook import QueueRunOut
from plateyard.services.webhook_notifier import utcnow
from plateyard.services.webhook_queue import process_webhook_queue

router = APIRouter(prefix="/cron", tags=["cron"])
logger = logging.getLogger("plateyard.cron")


def require_cron_caller(request: Request) -> None:
    """Scheduled callers send `Authorization: Bearer <CRON_SECRET>` when one is set."""
    if not settings.CRON_SECRET:
        return
    auth = request.headers.get("authorization", "")
    token = auth[7:] if auth.lower().startswith("bearer ") else None
    if not secrets_match(token, settings.CRON_SECRET):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.api_route(
    "/process-webhooks",
    methods=["GET", "POST"],
    response_model=QueueRunOut,
    dependencies=[Depends(require_cron_caller)],
)
def process_webhooks(
    db: Session = Depends(get_db), http: httpx.Client = Depends(get_http_client)
):
    run = process_webhook_queue(db, http)
    logger.info("cron webhook run %s", run.as_dict())
    return QueueRunOut(
        **run.as_dict(),
        message=f"Processed {run.processed} queued webhooks",
        timestamp=utcnow(),
    )

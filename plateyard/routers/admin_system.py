import logging

import httpx
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from plateyard.core.admin import require_admin
from plateyard.core.config import settings
from plateyard.core.deps import get_http_client
from plateyard.db.session import get_db
from plateyard.schemas.system import (
    EmailTestIn,
    EmailTestOut,
    HealthOut,
    ResetDatabaseIn,
    ResetDatabaseOut,
    StripeSettingsIn,
    StripeSettingsOut,
)
from plateyard.services import health
from plateyard.services.email import email_configured, send_email
from plateyard.services.orders import reset_database
from plateyard.services.product_sync import get_stripe_settings

router = APIRouter(
    prefix="/admin/system", tags=["admin"], dependencies=[Depends(require_admin)]
)
logger = logging.getLogger("plateyard.admin.system")

RESET_CONFIRMATION = "RESET"


@router.get("/health", response_model=HealthOut)
def system_health(db: Session = Depends(get_db)):
    return HealthOut(**health.system_health(db, settings))


@router.post("/reset-database", response_model=ResetDatabaseOut)
def reset(payload: ResetDatabaseIn, db: Session = Depends(get_db)):
    if payload.confirm != RESET_CONFIRMATION:
        raise HTTPException(
            status_code=400, detail=f'Send {{"confirm": "{RESET_CONFIRMATION}"}} to reset'
        )
    return ResetDatabaseOut(deleted=reset_database(db))


@router.get("/stripe-settings", response_model=StripeSettingsOut)
def get_stripe_config(db: Session = Depends(get_db)):
    return StripeSettingsOut(default_tax_code=get_stripe_settings(db).default_tax_code)


@router.put("/stripe-settings", response_model=StripeSettingsOut)
def update_stripe_config(payload: StripeSettingsIn, db: Session = Depends(get_db)):
    code = (payload.default_tax_code or "").strip()
    if not code:
        raise HTTPException(status_code=400, detail="default_tax_code is required")

    s = get_stripe_settings(db)
    s.default_tax_code = code
    db.add(s)
    db.commit()
    db.refresh(s)
    return StripeSettingsOut(default_tax_code=s.default_tax_code)


@router.post("/test-email", response_model=EmailTestOut)
def test_email(
    payload: EmailTestIn, http: httpx.Client = Depends(get_http_client)
):
    if not email_configured():
        raise HTTPException(status_code=503, detail="Mailgun is not configured")
    result = send_email(
        http,
        str(payload.to),
        payload.subject,
        "<p>This is a test email from The Plate Yard admin.</p>",
        "This is a test email from The Plate Yard admin.",
    )
    return EmailTestOut(success=result.success, message_id=result.message_id, error=result.error)

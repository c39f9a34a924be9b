from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from plateyard.core.admin import require_admin
from plateyard.core.config import settings
from plateyard.db.session import get_db
from plateyard.schemas.option import (
    OptionEnvelope,
    OptionOut,
    OptionsBatchIn,
    OptionsOut,
    OptionValueIn,
)
from plateyard.services import options as option_store
from plateyard.services.webhook_notifier import (
    SETTING_DEFAULTS as WEBHOOK_SETTINGS,
    SETTINGS_CATEGORY as WEBHOOK_CATEGORY,
    validate_settings_patch,
)

router = APIRouter(
    prefix="/admin/options", tags=["admin"], dependencies=[Depends(require_admin)]
)


def _out(opt: option_store.OptionValue) -> OptionOut:
    return OptionOut(
        option_name=opt.name,
        option_value=opt.value,
        option_type=opt.option_type,
        category=opt.category,
        is_sensitive=opt.is_sensitive,
        description=opt.description,
    )


def _webhook_setting(item: dict) -> str | None:
    name = item.get("option_name")
    if isinstance(name, str) and name.strip() in WEBHOOK_SETTINGS:
        return name.strip()
    return None


def _check_webhook_settings(items: list[dict]) -> list[dict]:
    """Webhook settings written here get the same checks as /admin/webhooks/settings."""
    patch = {}
    checked = []
    for item in items:
        name = _webhook_setting(item)
        if name is None:
            checked.append(item)
            continue
        patch[name] = item.get("option_value")
        checked.append(
            {
                **item,
                "option_type": WEBHOOK_SETTINGS[name][1],
                "category": WEBHOOK_CATEGORY,
            }
        )
    if patch:
        validate_settings_patch(patch)
    return checked


@router.get("", response_model=OptionsOut)
def list_options(include_sensitive: bool = False, db: Session = Depends(get_db)):
    rows = option_store.get_all_options(db, include_sensitive)
    return OptionsOut(options=[_out(o) for o in rows], count=len(rows))


@router.post("", response_model=OptionsOut)
def save_options(payload: OptionsBatchIn, db: Session = Depends(get_db)):
    if not isinstance(payload.options, list):
        raise HTTPException(status_code=400, detail="Options must be an array")
    if not all(isinstance(item, dict) for item in payload.options):
        raise HTTPException(
            status_code=400, detail="Each option must have a valid option_name"
        )
    saved = option_store.set_options(db, _check_webhook_settings(payload.options))
    return OptionsOut(options=[_out(o) for o in saved], count=len(saved))


@router.post("/sync-env")
def sync_env(db: Session = Depends(get_db)):
    return {"success": True, **option_store.sync_env_to_options(db, settings)}


@router.get("/{name}", response_model=OptionEnvelope)
def get_option(name: str, db: Session = Depends(get_db)):
    opt = option_store.find_option(db, name)
    if not opt:
        raise HTTPException(status_code=404, detail="Option not found")
    return OptionEnvelope(option=_out(opt))


@router.put("/{name}", response_model=OptionEnvelope)
def put_option(name: str, payload: OptionValueIn, db: Session = Depends(get_db)):
    (item,) = _check_webhook_settings(
        [
            {
                "option_name": name,
                "option_value": payload.value,
                "option_type": payload.option_type,
                "category": payload.category,
            }
        ]
    )
    opt = option_store.set_option(
        db,
        name,
        payload.value,
        option_type=item["option_type"],
        category=item["category"],
        description=payload.description,
        sensitive=payload.is_sensitive,
    )
    return OptionEnvelope(option=_out(opt))


@router.delete("/{name}")
def delete_option(name: str, db: Session = Depends(get_db)):
    if not option_store.delete_option(db, name):
        raise HTTPException(status_code=404, detail="Option not found")
    return {"success": True, "deleted": name}

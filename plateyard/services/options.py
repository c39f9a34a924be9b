"""
Options store: named configuration values persisted in the `options` table.

Values are stored as text and parsed back according to `option_type`.
Sensitive options (API secrets) are left out of listings unless explicitly
requested.
"""

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from plateyard.core.config import Settings
from plateyard.core.errors import InvalidRequest, UpstreamError
from plateyard.models.option import OPTION_TYPES, Option

logger = logging.getLogger("plateyard.options")

# names that are always stored as sensitive, whoever writes them
SENSITIVE_OPTION_NAMES = frozenset(
    {
        "stripe_secret_key",
        "stripe_webhook_secret",
        "mailgun_api_key",
        "database_url",
        "webhook_secret",
    }
)

# settings attribute -> (option name, category)
ENV_OPTION_MAPPINGS: dict[str, tuple[str, str]] = {
    "STRIPE_PUBLISHABLE_KEY": ("stripe_publishable_key", "stripe"),
    "STRIPE_API_KEY": ("stripe_secret_key", "stripe"),
    "STRIPE_WEBHOOK_SECRET": ("stripe_webhook_secret", "stripe"),
    "MAILGUN_API_KEY": ("mailgun_api_key", "email"),
    "MAILGUN_DOMAIN": ("mailgun_domain", "email"),
    "MAILGUN_FROM_EMAIL": ("mailgun_from_email", "email"),
    "DATABASE_URL": ("database_url", "database"),
    "BASE_URL": ("app_base_url", "app"),
    "ENV": ("app_environment", "app"),
}


@dataclass(frozen=True)
class OptionValue:
    name: str
    value: Any
    option_type: str
    category: str
    is_sensitive: bool
    description: str | None = None


def parse_value(raw: str | None, option_type: str) -> Any:
    if raw is None:
        return None
    if option_type == "boolean":
        return raw.lower() == "true"
    if option_type == "number":
        return int(raw)
    if option_type == "decimal":
        return float(raw)
    if option_type == "json":
        try:
            return json.loads(raw)
        except ValueError:
            return raw
    return raw


def stringify_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def infer_type(value: Any) -> str:
    # bool first: it is a subclass of int
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "number"
    if isinstance(value, float):
        return "decimal"
    if isinstance(value, (dict, list)):
        return "json"
    return "string"


def _to_value(row: Option) -> OptionValue:
    try:
        value = parse_value(row.option_value, row.option_type)
    except ValueError:
        logger.warning(
            "option %s holds %r, not a %s", row.option_name, row.option_value, row.option_type
        )
        value = row.option_value
    return OptionValue(
        name=row.option_name,
        value=value,
        option_type=row.option_type,
        category=row.category,
        is_sensitive=row.is_sensitive,
        description=row.description,
    )


def _validate_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise InvalidRequest("Each option must have a valid option_name")
    return name.strip()


def find_option(db: Session, name: str) -> OptionValue | None:
    row = db.query(Option).filter(Option.option_name == name).first()
    return _to_value(row) if row else None


def get_option(db: Session, name: str, default: Any = None) -> Any:
    opt = find_option(db, name)
    if opt is None or opt.value is None:
        return default
    return opt.value


def get_options_by_category(db: Session, category: str) -> dict[str, Any]:
    rows = (
        db.query(Option)
        .filter(Option.category == category)
        .order_by(Option.option_name)
        .all()
    )
    return {r.option_name: _to_value(r).value for r in rows}


def get_all_options(db: Session, include_sensitive: bool = False) -> list[OptionValue]:
    q = db.query(Option)
    if not include_sensitive:
        q = q.filter(Option.is_sensitive.is_(False))
    rows = q.order_by(Option.category, Option.option_name).all()
    return [_to_value(r) for r in rows]


def _upsert(
    db: Session,
    name: str,
    value: Any,
    *,
    option_type: str | None,
    category: str | None,
    description: str | None,
    sensitive: bool | None,
) -> Option:
    if option_type is not None and option_type not in OPTION_TYPES:
        raise InvalidRequest(f"Unknown option_type '{option_type}'")

    row = db.query(Option).filter(Option.option_name == name).first()
    if row is None:
        row = Option(
            option_name=name,
            option_type=option_type or infer_type(value),
            category=category or "general",
            is_sensitive=bool(sensitive) or name in SENSITIVE_OPTION_NAMES,
            description=description,
        )
    else:
        if option_type is not None:
            row.option_type = option_type
        if category is not None:
            row.category = category
        if description is not None:
            row.description = description
        if sensitive is not None:
            row.is_sensitive = sensitive or name in SENSITIVE_OPTION_NAMES

    row.option_value = stringify_value(value)
    db.add(row)
    return row


def set_option(
    db: Session,
    name: str,
    value: Any,
    *,
    option_type: str | None = None,
    category: str | None = None,
    description: str | None = None,
    sensitive: bool | None = None,
) -> OptionValue:
    name = _validate_name(name)
    try:
        row = _upsert(
            db,
            name,
            value,
            option_type=option_type,
            category=category,
            description=description,
            sensitive=sensitive,
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise UpstreamError(f"Failed to save option {name}", details=str(e))
    db.refresh(row)
    return _to_value(row)


def set_options(db: Session, batch: Iterable[dict[str, Any]]) -> list[OptionValue]:
    """
    Upsert several options in one transaction. Every name is validated
    before anything is written; a database error rolls the whole batch back.
    """
    items = list(batch)
    names = [_validate_name(item.get("option_name")) for item in items]

    rows = []
    try:
        for name, item in zip(names, items):
            rows.append(
                _upsert(
                    db,
                    name,
                    item.get("option_value"),
                    option_type=item.get("option_type"),
                    category=item.get("category"),
                    description=item.get("description"),
                    sensitive=item.get("is_sensitive"),
                )
            )
            # later items in the batch may reference the same name
            db.flush()
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise UpstreamError("Failed to save options", details=str(e))

    for row in rows:
        db.refresh(row)
    return [_to_value(r) for r in rows]


def delete_option(db: Session, name: str) -> bool:
    deleted = db.query(Option).filter(Option.option_name == name).delete()
    db.commit()
    return deleted > 0


def get_env_or_option(db: Session, env_value: Any, name: str, default: Any = None) -> Any:
    """An explicitly configured environment value wins over the stored option."""
    if env_value not in (None, ""):
        return env_value
    return get_option(db, name, default)


def sync_env_to_options(db: Session, config: Settings) -> dict[str, Any]:
    batch = []
    for attr, (name, category) in ENV_OPTION_MAPPINGS.items():
        value = getattr(config, attr, None)
        if value in (None, ""):
            continue
        batch.append(
            {
                "option_name": name,
                "option_value": value,
                "option_type": "string",
                "category": category,
                "description": f"Mirrored from {attr}",
                "is_sensitive": name in SENSITIVE_OPTION_NAMES,
            }
        )

    saved = set_options(db, batch) if batch else []
    logger.info("synced %d of %d env values to options", len(saved), len(ENV_OPTION_MAPPINGS))
    return {
        "synced": [o.name for o in saved],
        "synced_count": len(saved),
        "total_mappings": len(ENV_OPTION_MAPPINGS),
    }

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.orm import Session

from plateyard.core.errors import AppError
from plateyard.core.stripe_client import StripePayments
from plateyard.models.product import Product
from plateyard.models.stripe_settings import StripeSettings

logger = logging.getLogger("plateyard.product_sync")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_stripe_settings(db: Session) -> StripeSettings:
    row = db.query(StripeSettings).filter(StripeSettings.key == "default").first()
    if not row:
        row = StripeSettings(key="default")
        db.add(row)
        db.commit()
        db.refresh(row)
    return row


@dataclass
class SyncReport:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    created: int = 0
    updated: int = 0
    reused: int = 0
    errors: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return asdict(self)


def price_cents(product: Product) -> int:
    return int((Decimal(product.selling_price) * 100).to_integral_value())


def _sync_price(payments: StripePayments, product: Product, report: SyncReport) -> str:
    cents = price_cents(product)
    active = payments.list_active_prices(product.stripe_product_id)

    match = next((p for p in active if p["unit_amount"] == cents), None)
    if match:
        report.reused += 1
        return match["id"]

    price_id = payments.create_price(product.stripe_product_id, cents)
    for old in active:
        payments.archive_price(old["id"])
    return price_id


def sync_product(
    payments: StripePayments, product: Product, tax_code: str, report: SyncReport
) -> None:
    fields = dict(
        name=product.title,
        tax_code=tax_code,
        metadata={"product_id": str(product.id), "weight": str(product.weight)},
    )
    if product.stripe_product_id:
        payments.update_product(
            product.stripe_product_id, description=product.description or "", **fields
        )
        report.updated += 1
    else:
        product.stripe_product_id = payments.create_product(
            description=product.description, **fields
        )
        report.created += 1

    product.stripe_price_id = _sync_price(payments, product, report)
    product.stripe_price_amount = price_cents(product)
    product.stripe_synced_at = utcnow()
    product.stripe_active = True


def sync_products(
    db: Session, payments: StripePayments, product_ids: list[int] | None = None
) -> SyncReport:
    """
    Push available products to Stripe. One product failing does not stop the
    rest; its error is collected in the report.
    """
    tax_code = get_stripe_settings(db).default_tax_code

    q = db.query(Product).filter(Product.available.is_(True))
    if product_ids:
        q = q.filter(Product.id.in_(product_ids))

    report = SyncReport()
    for product in q.order_by(Product.weight).all():
        report.processed += 1
        try:
            sync_product(payments, product, tax_code, report)
        except AppError as e:
            # ids written before the failure are kept so a rerun can resume
            report.failed += 1
            report.errors.append(
                {"product_id": product.id, "title": product.title, "error": e.message}
            )
            logger.warning("stripe sync failed for product %s: %s", product.id, e.details)
        else:
            report.succeeded += 1
        db.add(product)
        db.commit()

    logger.info("stripe product sync: %s", report.as_dict())
    return report


def sync_status(db: Session) -> list[dict]:
    rows = db.query(Product).order_by(Product.weight).all()
    return [
        {
            "product_id": p.id,
            "title": p.title,
            "available": p.available,
            "stripe_product_id": p.stripe_product_id,
            "stripe_price_id": p.stripe_price_id,
            "stripe_synced_at": p.stripe_synced_at,
            "price_matches": p.stripe_price_amount == price_cents(p),
        }
        for p in rows
    ]

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sqlalchemy.orm import Session

from plateyard.core.admin import require_admin
from plateyard.core.stripe_client import StripePayments, get_payments
from plateyard.db.session import get_db
from plateyard.models.product import Product
from plateyard.schemas.product import AdminProductOut, ProductIn, SyncIn
from plateyard.services import product_sync, storage
from plateyard.services.orders import utcnow

router = APIRouter(
    prefix="/admin/products", tags=["admin"], dependencies=[Depends(require_admin)]
)

REQUIRED_FIELDS = ("title", "weight", "selling_price", "regular_price")


def _require_product(db: Session, product_id: int) -> Product:
    product = db.query(Product).filter(Product.id == product_id).first()
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


def _check_required(payload: ProductIn) -> None:
    missing = [f for f in REQUIRED_FIELDS if getattr(payload, f) in (None, "")]
    if missing:
        raise HTTPException(
            status_code=400, detail=f"Missing required fields: {', '.join(missing)}"
        )


def _apply(product: Product, payload: ProductIn) -> None:
    product.title = payload.title.strip()
    product.description = payload.description
    product.weight = payload.weight
    product.selling_price = payload.selling_price
    product.regular_price = payload.regular_price
    product.cost = payload.cost
    product.available = payload.available


@router.get("", response_model=list[AdminProductOut])
def list_products(db: Session = Depends(get_db)):
    rows = db.query(Product).order_by(Product.weight).all()
    return [AdminProductOut.model_validate(p) for p in rows]


@router.post("", response_model=AdminProductOut, status_code=201)
def create_product(payload: ProductIn, db: Session = Depends(get_db)):
    _check_required(payload)
    product = Product()
    _apply(product, payload)
    db.add(product)
    db.commit()
    db.refresh(product)
    return AdminProductOut.model_validate(product)


@router.put("/{product_id}", response_model=AdminProductOut)
def update_product(product_id: int, payload: ProductIn, db: Session = Depends(get_db)):
    _check_required(payload)
    product = _require_product(db, product_id)
    _apply(product, payload)
    db.add(product)
    db.commit()
    db.refresh(product)
    return AdminProductOut.model_validate(product)


@router.delete("/{product_id}")
def delete_product(product_id: int, db: Session = Depends(get_db)):
    product = _require_product(db, product_id)
    db.delete(product)
    db.commit()
    return {"success": True, "deleted": product_id}


@router.post("/{product_id}/image", response_model=AdminProductOut)
def upload_image(
    product_id: int, file: UploadFile = File(...), db: Session = Depends(get_db)
):
    product = _require_product(db, product_id)
    data = file.file.read()
    product.image_url = storage.save_product_image(product.id, file.content_type, data)
    product.image_uploaded_at = utcnow()
    db.add(product)
    db.commit()
    db.refresh(product)
    return AdminProductOut.model_validate(product)


@router.post("/sync-stripe")
def sync_stripe(
    payload: SyncIn | None = None,
    db: Session = Depends(get_db),
    payments: StripePayments = Depends(get_payments),
):
    if not payments.configured:
        raise HTTPException(status_code=503, detail="Stripe is not configured")
    report = product_sync.sync_products(
        db, payments, payload.product_ids if payload else None
    )
    return {"success": report.failed == 0, **report.as_dict()}


@router.get("/sync-stripe")
def sync_stripe_status(db: Session = Depends(get_db)):
    products = product_sync.sync_status(db)
    return {
        "success": True,
        "products": products,
        "in_sync": sum(1 for p in products if p["price_matches"]),
        "total": len(products),
    }

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from plateyard.core.admin import require_admin
from plateyard.db.session import get_db
from plateyard.schemas.customer import CustomerListOut, CustomerOut, CustomerStatsOut
from plateyard.services.orders import customer_stats

router = APIRouter(
    prefix="/admin/customers", tags=["admin"], dependencies=[Depends(require_admin)]
)


@router.get("", response_model=CustomerListOut)
def list_customers(db: Session = Depends(get_db)):
    rows = [
        CustomerStatsOut(
            **CustomerOut.model_validate(customer).model_dump(),
            order_count=order_count,
            total_spent=total_spent,
            last_payment_at=customer.last_payment_at,
        )
        for customer, order_count, total_spent in customer_stats(db)
    ]
    return CustomerListOut(customers=rows, count=len(rows))

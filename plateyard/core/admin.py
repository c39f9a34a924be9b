from fastapi import Depends, HTTPException, status

from plateyard.core.config import settings
from plateyard.core.deps import get_current_customer
from plateyard.models.customer import Customer


def require_admin(customer: Customer = Depends(get_current_customer)) -> Customer:
    if not customer.email or customer.email.lower() != settings.ADMIN_EMAIL.lower():
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin only")
    return customer

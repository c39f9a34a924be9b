from collections.abc import Iterator

import httpx
from fastapi import Depends, HTTPException, Request, status
from jose import JWTError
from sqlalchemy.orm import Session

from plateyard.core.security import decode_token
from plateyard.db.session import get_db
from plateyard.models.customer import Customer

ACCESS_COOKIE = "access_token"

# outbound calls (webhooks, email) set their own per-request timeout
DEFAULT_HTTP_TIMEOUT = httpx.Timeout(30.0)


def get_current_customer(request: Request, db: Session = Depends(get_db)) -> Customer:
    token = request.cookies.get(ACCESS_COOKIE)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated"
        )

    try:
        payload = decode_token(token)
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid access token"
        )

    if payload.get("type") != "access" or not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid access token"
        )

    try:
        customer_id = int(payload["sub"])
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid access token"
        )

    customer = db.query(Customer).filter(Customer.id == customer_id).first()
    if not customer:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Customer not found"
        )

    return customer


def get_http_client() -> Iterator[httpx.Client]:
    with httpx.Client(timeout=DEFAULT_HTTP_TIMEOUT) as client:
        yield client

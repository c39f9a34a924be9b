import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from jose import JWTError
from sqlalchemy.orm import Session

from plateyard.core.config import settings
from plateyard.core.deps import ACCESS_COOKIE, get_current_customer
from plateyard.core.security import (
    decode_token,
    hash_password,
    make_access_token,
    make_refresh_token,
    new_jti,
    verify_password,
)
from plateyard.db.session import get_db
from plateyard.models.customer import Customer
from plateyard.schemas.auth import AccountOut, LoginIn, SignupIn

router = APIRouter(tags=["auth"])
logger = logging.getLogger("plateyard.auth")

REFRESH_COOKIE = "refresh_token"


def _set_auth_cookies(resp: Response, access: str, refresh: str):
    common = dict(
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="lax",
        path="/",
    )
    if settings.COOKIE_DOMAIN:
        common["domain"] = settings.COOKIE_DOMAIN

    resp.set_cookie(
        key=ACCESS_COOKIE,
        value=access,
        max_age=settings.ACCESS_TTL_MIN * 60,
        **common,
    )
    resp.set_cookie(
        key=REFRESH_COOKIE,
        value=refresh,
        max_age=settings.REFRESH_TTL_DAYS * 24 * 3600,
        **common,
    )


def _clear_auth_cookies(resp: Response):
    common = dict(path="/")
    if settings.COOKIE_DOMAIN:
        common["domain"] = settings.COOKIE_DOMAIN
    resp.delete_cookie(ACCESS_COOKIE, **common)
    resp.delete_cookie(REFRESH_COOKIE, **common)


def _issue_session(db: Session, customer: Customer, response: Response) -> None:
    customer.refresh_jti = new_jti()
    db.add(customer)
    db.commit()
    db.refresh(customer)
    _set_auth_cookies(
        response,
        make_access_token(customer.id),
        make_refresh_token(customer.id, customer.refresh_jti),
    )


def _account_out(customer: Customer) -> AccountOut:
    return AccountOut(
        id=customer.id,
        email=customer.email,
        name=customer.name,
        is_admin=customer.email.lower() == settings.ADMIN_EMAIL.lower(),
    )


@router.post("/auth/signup", response_model=AccountOut)
def signup(payload: SignupIn, response: Response, db: Session = Depends(get_db)):
    email = payload.email.lower().strip()

    # guests who checked out already have a customer row; let them claim it
    customer = db.query(Customer).filter(Customer.email == email).first()
    if customer and customer.password_hash:
        raise HTTPException(status_code=409, detail="Email already in use")
    if not customer:
        customer = Customer(email=email)

    customer.password_hash = hash_password(payload.password)
    if payload.name:
        customer.name = payload.name.strip()
    if payload.phone:
        customer.phone = payload.phone.strip()

    _issue_session(db, customer, response)
    logger.info("account created customer=%s", customer.id)
    return _account_out(customer)


@router.post("/auth/login", response_model=AccountOut)
def login(payload: LoginIn, response: Response, db: Session = Depends(get_db)):
    email = payload.email.lower().strip()
    customer = db.query(Customer).filter(Customer.email == email).first()

    if not customer or not customer.password_hash:
        raise HTTPException(status_code=401, detail="Invalid credentials")

    if not verify_password(payload.password, customer.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    _issue_session(db, customer, response)
    return _account_out(customer)


@router.post("/auth/refresh")
def refresh(request: Request, response: Response, db: Session = Depends(get_db)):
    token = request.cookies.get(REFRESH_COOKIE)
    if not token:
        raise HTTPException(status_code=401, detail="Missing refresh token")

    try:
        payload = decode_token(token)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid refresh token")

    if payload.get("type") != "refresh":
        raise HTTPException(status_code=401, detail="Invalid refresh token")

    jti = payload.get("jti")
    try:
        customer_id = int(payload.get("sub") or "")
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid refresh token")

    customer = db.query(Customer).filter(Customer.id == customer_id).first()
    if not customer or not jti or customer.refresh_jti != jti:
        raise HTTPException(status_code=401, detail="Refresh token revoked")

    _issue_session(db, customer, response)
    return {"success": True}


@router.post("/auth/logout")
def logout(request: Request, response: Response, db: Session = Depends(get_db)):
    # revoke the refresh token if it is still valid; an expired one needs nothing
    token = request.cookies.get(REFRESH_COOKIE)
    if token:
        try:
            payload = decode_token(token)
        except JWTError:
            payload = {}
        if payload.get("type") == "refresh" and str(payload.get("sub", "")).isdigit():
            customer = (
                db.query(Customer).filter(Customer.id == int(payload["sub"])).first()
            )
            if customer:
                customer.refresh_jti = None
                db.add(customer)
                db.commit()

    _clear_auth_cookies(response)
    return {"success": True}


@router.get("/me", response_model=AccountOut)
def me(customer: Customer = Depends(get_current_customer)):
    return _account_out(customer)

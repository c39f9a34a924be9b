import logging
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from plateyard.core.config import settings
from plateyard.core.errors import (
    AppError,
    app_error_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from plateyard.core.logging import configure_logging, new_request_id, request_id_ctx
from plateyard.routers.admin_customers import router as admin_customers_router
from plateyard.routers.admin_options import router as admin_options_router
from plateyard.routers.admin_orders import router as admin_orders_router
from plateyard.routers.admin_products import router as admin_products_router
from plateyard.routers.admin_system import router as admin_system_router
from plateyard.routers.admin_webhooks import router as admin_webhooks_router
from plateyard.routers.auth import router as auth_router
from plateyard.routers.cron import router as cron_router
from plateyard.routers.storefront import router as storefront_router
from plateyard.routers.webhooks import router as webhooks_router

configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger("plateyard")


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("x-request-id") or new_request_id()
        token = request_id_ctx.set(rid)
        try:
            response = await call_next(request)
            response.headers["x-request-id"] = rid
            return response
        finally:
            request_id_ctx.reset(token)


app = FastAPI(title="Plate Yard API")
app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Path(settings.MEDIA_DIR).mkdir(parents=True, exist_ok=True)
app.mount(settings.MEDIA_URL, StaticFiles(directory=settings.MEDIA_DIR), name="media")


app.include_router(auth_router)
app.include_router(storefront_router)
app.include_router(admin_orders_router)
app.include_router(admin_products_router)
app.include_router(admin_customers_router)
app.include_router(admin_options_router)
app.include_router(admin_webhooks_router)
app.include_router(admin_system_router)
app.include_router(cron_router)
app.include_router(webhooks_router)


app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)


@app.get("/health")
def health():
    return {"success": True, "status": "ok"}


@app.get("/")
def root():
    return {"status": "ok", "docs": "/docs"}

# khopay/main.py

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from khopay.config import settings
from khopay.exceptions import PaymentError
from khopay.logging_config import get_logger
from khopay.middleware import request_id_middleware

# ---------------------------------------------
# IMPORT ROUTERS
# ---------------------------------------------
from khopay.routers import (
    health,
    payments,
    webhooks,
    recon,
    gateways,
)

logger = get_logger(__name__)

# ---------------------------------------------
# APP INIT
# ---------------------------------------------
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
)

# ---------------------------------------------
# CORS
# ---------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.middleware("http")(request_id_middleware)


# ---------------------------------------------
# ERRORS
# ---------------------------------------------
@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    log = logger.warning if exc.status_code < 500 else logger.error
    log("payment_error", code=exc.code, status_code=exc.status_code, detail=exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


# ---------------------------------------------
# STARTUP
# ---------------------------------------------
@app.on_event("startup")
def create_tables():
    # Local runs only; production schema is managed by Alembic
    if settings.AUTO_CREATE_TABLES:
        from khopay import models  # noqa: F401
        from khopay.db import Base, engine

        Base.metadata.create_all(bind=engine)
        logger.info("database_tables_created")


# ---------------------------------------------
# ROUTERS
# ---------------------------------------------

# Health
app.include_router(health.router, prefix="/health", tags=["Health"])

# Payments
app.include_router(payments.router)

# Webhooks
app.include_router(webhooks.router)

# Reconciliation
app.include_router(recon.router)

# Gateways
app.include_router(gateways.router)


# ---------------------------------------------
# ROOT ENDPOINT
# ---------------------------------------------
@app.get("/")
def root():
    return {"message": f"{settings.APP_NAME} is running"}

import logging

from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.database import Base, engine
from app.models import offer, payment, subscription_plan, user  # noqa: F401 - register mappers
from app.routers import payments, subscription_plans, subscriptions
from app.services.email_services import register_payment_emails
from app.services.razorpay_gateway import close_gateway
from app.utils.response import create_response, handle_exception, register_exception_handlers

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.PROJECT_NAME)
register_exception_handlers(app)

# Auto create tables
Base.metadata.create_all(bind=engine)

# CORS for SPA / API access
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    if settings.PAYMENT_DEMO_MODE:
        logger.warning("PAYMENT_DEMO_MODE is enabled; payments are NOT sent to the gateway")
    register_payment_emails()


@app.on_event("shutdown")
async def shutdown_event():
    close_gateway()

# Add routes
app.include_router(subscription_plans.router)
app.include_router(payments.router)
app.include_router(subscriptions.router)


@app.get("/")
def home():
    try:
        return create_response(
            message="Billing API running",
            data={"service": "billing-backend"},
            status_code=status.HTTP_200_OK
        )
    except Exception as exc:
        return handle_exception(exc)


@app.get("/api-info")
def api_info():
    return create_response(
        message="API information",
        data={
            "service": settings.PROJECT_NAME,
            "docs_url": "/docs",
            "currency": settings.PAYMENT_CURRENCY,
            "demo_mode": settings.PAYMENT_DEMO_MODE,
        },
    )

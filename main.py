from dotenv import load_dotenv
load_dotenv()

from app.common.logger import configure_logging
from app.config.config import settings
configure_logging(json_output=settings.LOG_JSON)

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_401_UNAUTHORIZED,
    HTTP_402_PAYMENT_REQUIRED,
    HTTP_403_FORBIDDEN,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_500_INTERNAL_SERVER_ERROR,
    HTTP_502_BAD_GATEWAY,
    HTTP_503_SERVICE_UNAVAILABLE,
)
import structlog

from app.api import auth, payment, restaurant, subscription, user
from app.data import dbinit
from app.common.middleware import log_requests
from app.common.messaging import rabbitmq_manager
from app.common.exception import (
    AccessDenied,
    BillingValidationError,
    GeneralDataException,
    IntegrityException,
    PaymentProviderError,
    RecordNotFoundException,
    SubscriptionInactive,
    TierLimitExceeded,
    WebhookSignatureInvalid,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup logic
    logger.info("Application is starting up...")
    await dbinit.init_db()
    if settings.RABBITMQ_HOST:
        await rabbitmq_manager.connect()
    try:
        yield
    finally:
        await rabbitmq_manager.disconnect()


app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    lifespan=lifespan
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Update this for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.middleware("http")(log_requests)

app.include_router(
    auth.router,
    prefix=f"{settings.API_V1_PREFIX}/auth",
    tags=["authentication"]
)

app.include_router(
    user.router,
    prefix=f"{settings.API_V1_PREFIX}/users",
    tags=["users"]
)

app.include_router(
    subscription.router,
    prefix=f"{settings.API_V1_PREFIX}/subscription",
    tags=["subscription"]
)

app.include_router(
    restaurant.router,
    prefix=f"{settings.API_V1_PREFIX}/restaurants",
    tags=["restaurants"]
)

app.include_router(
    payment.router,
    prefix=settings.API_V1_PREFIX,
)

app.include_router(payment.public_router)


def _error(request: Request, status_code: int, error: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "status_code": status_code,
            "error": error,
            "message": message,
            "path": request.url.path,
            **extra,
        },
    )


@app.exception_handler(BillingValidationError)
async def billing_validation_handler(request: Request, exc: BillingValidationError):
    return _error(request, HTTP_400_BAD_REQUEST, "ValidationError", exc.reason, field=exc.field)


@app.exception_handler(SubscriptionInactive)
async def subscription_inactive_handler(request: Request, exc: SubscriptionInactive):
    return _error(request, HTTP_402_PAYMENT_REQUIRED, "SubscriptionInactive", exc.reason)


@app.exception_handler(TierLimitExceeded)
async def tier_limit_handler(request: Request, exc: TierLimitExceeded):
    return _error(
        request,
        HTTP_403_FORBIDDEN,
        "TierLimitExceeded",
        exc.reason,
        resource=exc.resource,
        current=exc.count,
        limit=exc.limit,
    )


@app.exception_handler(AccessDenied)
async def access_denied_handler(request: Request, exc: AccessDenied):
    return _error(request, HTTP_403_FORBIDDEN, "AccessDenied", exc.reason)


@app.exception_handler(PaymentProviderError)
async def payment_provider_handler(request: Request, exc: PaymentProviderError):
    return _error(request, HTTP_502_BAD_GATEWAY, "PaymentProviderError", exc.reason, operation=exc.operation)


@app.exception_handler(WebhookSignatureInvalid)
async def webhook_signature_handler(request: Request, exc: WebhookSignatureInvalid):
    return _error(request, HTTP_401_UNAUTHORIZED, "SignatureInvalid", exc.reason)


@app.exception_handler(RecordNotFoundException)
async def not_found_handler(request: Request, exc: RecordNotFoundException):
    return _error(request, HTTP_404_NOT_FOUND, "NotFound", exc.message)


@app.exception_handler(IntegrityException)
async def integrity_handler(request: Request, exc: IntegrityException):
    logger.warning(f"Integrity error: {exc.message}", context=exc.context)
    return _error(request, HTTP_409_CONFLICT, "Conflict", exc.message)


@app.exception_handler(GeneralDataException)
async def general_data_handler(request: Request, exc: GeneralDataException):
    logger.error(f"Unhandled data error: {exc.message}", context=exc.context)
    return _error(request, HTTP_500_INTERNAL_SERVER_ERROR, "DataError", exc.message)


@app.get("/health")
async def health_check():
    try:
        await dbinit.execute_sql("SELECT 1")
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return JSONResponse(status_code=HTTP_503_SERVICE_UNAVAILABLE, content={"status": "unhealthy"})
    return {"status": "healthy"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", reload=True)

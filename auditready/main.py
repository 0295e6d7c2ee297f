from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .auth.exceptions import MFAError, RateLimitedError, StepUpRequiredError
from .auth import router as mfa_router, admin_router
from .config.redis_config import close_redis_connections, ping_redis
from .core.logging import get_logger
from .database import create_tables

logger = get_logger(__name__)

app = FastAPI(
    title="AuditReady MFA API",
    description="Multi-factor authentication, trusted devices and session assurance for AuditReady",
    version="1.0.0"
)

# Include routers
app.include_router(mfa_router)
app.include_router(admin_router)


@app.exception_handler(MFAError)
async def mfa_error_handler(request: Request, exc: MFAError):
    """Translate typed MFA failures into user-facing JSON responses."""
    content = {"detail": exc.message, "code": exc.code}
    headers = {}

    if isinstance(exc, StepUpRequiredError) and exc.factor_id:
        content["factor_id"] = exc.factor_id
    if isinstance(exc, RateLimitedError) and exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)

    return JSONResponse(status_code=exc.status_code, content=content, headers=headers or None)


# Create database tables and test Redis connection on startup
@app.on_event("startup")
async def startup_event():
    create_tables()

    # Test Redis connection
    try:
        redis_healthy = await ping_redis()
        if redis_healthy:
            logger.info("Redis connection established")
        else:
            logger.warning("Redis connection failed; rate limiting will fail open")
    except Exception as e:
        logger.error("Redis connection error", {"error": str(e)})


# Close Redis connections on shutdown
@app.on_event("shutdown")
async def shutdown_event():
    await close_redis_connections()
    logger.info("Redis connections closed")


# Health check endpoint
@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "auditready-mfa"}

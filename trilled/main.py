# trilled/main.py
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from fastapi.exceptions import RequestValidationError, HTTPException
from contextlib import asynccontextmanager
import uvicorn
import time
import logging
import traceback

from trilled.db.database import init_db, check_db_connection
from trilled.api.auth import router as auth_router
from trilled.api.organizations import router as organizations_router
from trilled.api.users import router as users_router
from trilled.api.follow_ups import router as follow_ups_router
from trilled.api.companies import router as companies_router
from trilled.api.research import router as research_router
# Telephony routers
from trilled.api.calls import router as calls_router
from trilled.api.twiml import router as twiml_router
# Mailbox integrations
from trilled.api.integrations import router as integrations_router
from trilled.core.config import settings
from trilled.security import (
    error_handler,
    SecurityHeadersMiddleware,
    RequestSizeLimitMiddleware
)

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# Silence noisy third-party loggers
logging.getLogger('multipart.multipart').setLevel(logging.WARNING)
logging.getLogger('uvicorn.access').setLevel(logging.WARNING)
logging.getLogger('twilio.http_client').setLevel(logging.WARNING)

logging.getLogger('trilled').setLevel(logging.DEBUG)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 Starting up {settings.PROJECT_NAME} API...")

    try:
        await init_db()
        logger.info("✅ Database initialized successfully")
    except Exception as e:
        logger.error(f"❌ Database initialization failed: {e}")
        raise

    if not settings.TWILIO_ACCOUNT_SID:
        logger.warning("⚠️  Twilio credentials not configured - telephony runs in mock mode")
    if not settings.SENDGRID_API_KEY:
        logger.warning("⚠️  SendGrid not configured - verification and invite emails are logged only")

    logger.info("✅ Application startup complete")
    yield

    logger.info("🛑 Shutting down application...")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.API_VERSION,
    description="Admissions CRM: leads, customers, follow-up sequences, email and phone",
    lifespan=lifespan
)

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestSizeLimitMiddleware, max_size=10 * 1024 * 1024)

cors_origins = settings.CORS_ORIGINS
logger.info(f"🌐 CORS origins: {cors_origins}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    client_host = request.client.host if request.client else 'unknown'

    if request.url.path in ["/favicon.ico", "/robots.txt"]:
        logger.debug(f"📄 Static: {request.method} {request.url.path} from {client_host}")
    else:
        logger.info(f"📨 HTTP: {request.method} {request.url.path} from {client_host}")

    try:
        response = await call_next(request)
    except Exception as e:
        process_time = time.time() - start_time
        logger.error(f"❌ Error processing {request.url.path}: {e} ({process_time:.3f}s)")
        logger.error(f"   Traceback: {traceback.format_exc()}")
        raise

    process_time = time.time() - start_time
    logger.info(f"✅ HTTP response: {response.status_code} ({process_time:.3f}s)")
    return response


@app.exception_handler(HTTPException)
async def http_error_response(request: Request, exc: HTTPException):
    return await error_handler.handle_http_exception(request, exc)


@app.exception_handler(RequestValidationError)
async def validation_error_response(request: Request, exc: RequestValidationError):
    return await error_handler.handle_validation_error(request, exc)


@app.exception_handler(Exception)
async def general_error_response(request: Request, exc: Exception):
    return await error_handler.handle_internal_error(request, exc)


@app.get("/favicon.ico")
async def favicon():
    return Response(status_code=204)


@app.get("/robots.txt")
async def robots():
    return Response(content="User-agent: *\nDisallow: /\n", media_type="text/plain")


@app.get("/health")
async def health_check():
    database_ok = await check_db_connection()
    return {
        "status": "healthy" if database_ok else "degraded",
        "service": "trilled-crm",
        "version": settings.API_VERSION,
        "database": database_ok,
        "features": {
            "telephony": bool(settings.TWILIO_ACCOUNT_SID),
            "transactional_email": bool(settings.SENDGRID_API_KEY),
            "research": bool(settings.RESEARCH_API_URL)
        },
        "timestamp": time.time()
    }


@app.get("/ping")
async def ping():
    return {"ping": "pong", "timestamp": time.time()}


@app.get("/")
async def root():
    """API root with endpoint information"""
    return {
        "message": settings.PROJECT_NAME,
        "version": settings.API_VERSION,
        "status": "running",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "auth": "/api/auth",
            "organizations": "/api/organizations",
            "users": "/api/users",
            "follow_ups": "/api/follow-ups",
            "companies": "/api/companies",
            "calls": "/api/calls",
            "twiml": "/api/twiml",
            "email": "/api/email"
        },
        "timestamp": time.time()
    }


@app.get("/api")
async def api_info():
    return {
        "name": settings.PROJECT_NAME,
        "version": settings.API_VERSION,
        "docs": "/docs",
        "health": "/health",
        "features": {
            "telephony": bool(settings.TWILIO_ACCOUNT_SID),
            "multi_tenant": True
        }
    }


logger.info("📋 Registering API routers...")

for name, router in (
    ("auth", auth_router),
    ("organizations", organizations_router),
    ("users", users_router),
    ("follow-ups", follow_ups_router),
    ("companies", companies_router),
    ("research", research_router),
    ("calls", calls_router),
    ("twiml", twiml_router),
    ("integrations", integrations_router),
):
    app.include_router(router, prefix="/api")
    logger.debug(f"🔌 {name} router registered")

logger.info("✅ All routers registered successfully")


if __name__ == "__main__":
    uvicorn.run(
        "trilled.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )

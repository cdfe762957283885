"""Main FastAPI application"""

from fastapi import FastAPI, Request
from fastapi.responses import Response
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from datetime import datetime, timezone
from pathlib import Path
import logging
import time
import uuid

from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from tourney.config import settings
from tourney.core.database import init_db, SessionLocal
from tourney.core.metrics import REQUEST_COUNT, REQUEST_LATENCY
from tourney.api.errors import register_exception_handlers
from tourney.api.v1 import auth, users

# Configure logging - ensure log directory exists
_log_dir = Path(settings.get_log_file()).parent
_log_dir.mkdir(parents=True, exist_ok=True)
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(settings.get_log_file()),
        logging.StreamHandler()
    ]
)

logger = logging.getLogger(__name__)

AUTH_PREFIX = "/api/v1/auth"

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    debug=settings.DEBUG,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None
)

# Cookies only travel cross-origin with credentials allowed
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", settings.CSRF_HEADER_NAME, "X-Request-ID"],
)

register_exception_handlers(app)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    """Security headers, request id and request metrics"""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    started = time.perf_counter()
    response = await call_next(request)
    elapsed = time.perf_counter() - started

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    # Session responses carry credentials; keep them out of shared caches.
    if request.url.path.startswith(AUTH_PREFIX):
        response.headers["Cache-Control"] = "no-store"

    route = request.scope.get("route")
    path = getattr(route, "path", request.url.path)
    REQUEST_COUNT.labels(request.method, path, str(response.status_code)).inc()
    REQUEST_LATENCY.labels(request.method, path).observe(elapsed)
    if elapsed > 1.0:
        logger.warning("Slow request %s %s %.2fs request_id=%s", request.method, path, elapsed, request_id)
    return response


def _bootstrap_owner() -> None:
    from tourney.services.user_service import user_service
    from tourney.schemas.user import UserCreate, UserRole

    db = SessionLocal()
    try:
        if user_service.get_user_by_email(db, settings.OWNER_EMAIL):
            return
        user_service.create_user(
            db,
            UserCreate(
                email=settings.OWNER_EMAIL,
                username="owner",
                password=settings.OWNER_PASSWORD,
                role=UserRole.OWNER,
                email_verified=True,
            )
        )
        logger.info("Created platform owner account")
    finally:
        db.close()


@app.on_event("startup")
async def startup_event():
    # Refuses to start without JWT_SECRET.
    settings.validate_security_settings()
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION} ({settings.ENVIRONMENT})")

    init_db()

    if settings.OWNER_EMAIL and settings.OWNER_PASSWORD:
        try:
            _bootstrap_owner()
        except Exception as e:
            logger.error(f"Failed to create owner account: {e}")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info(f"Shutting down {settings.APP_NAME}")


@app.get("/health")
async def health_check():
    """Liveness plus database and PII-encryption readiness"""
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        database = {"ok": True, "error": None}
    except Exception as exc:
        database = {"ok": False, "error": str(exc)}
    finally:
        db.close()

    return {
        "status": "healthy" if database["ok"] else "degraded",
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "readiness": {
            "database": database,
            "pii_encryption": bool(settings.ENCRYPTION_KEY),
        },
    }


@app.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(auth.router, prefix=AUTH_PREFIX, tags=["Authentication"])
app.include_router(users.router, prefix="/api/v1/users", tags=["Users"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "tourney.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS
    )

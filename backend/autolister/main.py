import asyncio
import logging
import re
import uuid

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from autolister.config import settings
from autolister.routers import aspects, correlation_jobs, listing
from autolister.utils.logger import logger

app = FastAPI(title="Auto-Lister API", version="1.0.0")

origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
    max_age=3600,
)


# Request logging middleware with request ID
@app.middleware("http")
async def request_logger(request: Request, call_next):
    rid = uuid.uuid4().hex[:8]
    request.state.rid = rid
    logging.info("→ %s %s rid=%s", request.method, request.url.path, rid)
    try:
        resp = await call_next(request)
        logging.info("← %s status=%s rid=%s", request.url.path, resp.status_code, rid)
        resp.headers["X-Request-ID"] = rid
        return resp
    except Exception as e:
        logging.exception("Unhandled error rid=%s: %s", rid, str(e))
        error_resp = JSONResponse(
            {"error": "internal_error", "rid": rid, "message": str(e), "type": type(e).__name__},
            status_code=500
        )
        error_resp.headers["X-Request-ID"] = rid
        return error_resp


app.include_router(listing.router)
app.include_router(correlation_jobs.router)
app.include_router(aspects.router)


@app.on_event("startup")
async def startup_event():
    logger.info("Auto-Lister API starting up...")

    database_url = settings.DATABASE_URL
    masked_url = re.sub(r'://([^:]+):([^@]+)@', r'://\1:****@', database_url)
    logger.info(f"Database URL: {masked_url}")

    if database_url.startswith("sqlite"):
        # No migrations in local sqlite mode; create the tables directly.
        from autolister.models_sqlalchemy import init_db
        init_db()
        logger.info("SQLite tables created")

    if not settings.START_BACKGROUND_WORKERS:
        logger.info("Background workers disabled (START_BACKGROUND_WORKERS=false)")
        return

    from autolister.workers import run_aspect_review_loop, run_stale_job_monitor_loop

    asyncio.create_task(run_aspect_review_loop())
    logger.info(
        "Aspect review worker started (runs every %s seconds)",
        settings.ASPECT_REVIEW_INTERVAL_SECONDS,
    )

    asyncio.create_task(run_stale_job_monitor_loop())
    logger.info("Correlation stale-job monitor started")


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/db")
async def health_db():
    """Database health check endpoint"""
    try:
        from autolister.models_sqlalchemy import engine
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return {"status": "ok", "database": "connected"}
    except Exception as e:
        logger.exception("Database health check failed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Database unavailable: {type(e).__name__}: {str(e)}",
        )


@app.get("/")
async def root():
    return {
        "message": "Auto-Lister API",
        "version": "1.0.0",
        "docs": "/docs"
    }

# File: civictrack/main.py
# Project: civictrack-backend

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi import _rate_limit_exceeded_handler

from civictrack.core.config import cors_origins_list, settings
from civictrack.core.errors import CoreError
from civictrack.core.ratelimit import limiter
from civictrack.routers import analytics, assignments, reports
from civictrack.services.scheduler import RefreshScheduler

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = None
    if settings.analytics_refresh_interval_minutes > 0:
        scheduler = RefreshScheduler(settings.analytics_refresh_interval_minutes)
        scheduler.start()
    app.state.scheduler = scheduler
    yield
    if scheduler is not None:
        scheduler.stop()


app = FastAPI(title="CivicTrack API", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(CoreError)
async def core_error_handler(request: Request, exc: CoreError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins_list(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.get("/health")
def health():
    return {"ok": True}

app.include_router(reports.router)
app.include_router(assignments.router)
app.include_router(analytics.router)

"""
AgencyDesk CRM - Quotes API server
"""

import logging
import re

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from pymongo import ASCENDING, DESCENDING
from starlette.middleware.cors import CORSMiddleware

from config import CORS_ORIGINS, client, db, now_iso
from routes import agency, auth, public, quotes
from services.quote_errors import QuoteError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("server")

# Unauthenticated approval-page endpoints
PUBLIC_PATH_RE = re.compile(r"^/api/quotes/[^/]+/(public(/pdf)?|track-view|approve|reject)$")

# Create the main app without a prefix
app = FastAPI(title="AgencyDesk CRM - Quotes")

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")
api_router.include_router(auth.router)
# Public routes first: /quotes/{id}/public must not be shadowed
api_router.include_router(public.router)
api_router.include_router(quotes.router)
api_router.include_router(agency.router)

app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ==================== ERROR MAPPING ====================

def is_public_path(path: str) -> bool:
    return bool(PUBLIC_PATH_RE.match(path))


@app.exception_handler(QuoteError)
async def quote_error_handler(request: Request, exc: QuoteError):
    """
    Domain errors -> HTTP. Server faults (render / dispatch) keep their
    detail for agency users; public callers get a generic message.
    """
    detail = exc.message
    if exc.status_code >= 500:
        logger.error(f"[API_ERROR] {request.method} {request.url.path} -> {exc.status_code}: {exc.message}")
        if exc.public_message and is_public_path(request.url.path):
            detail = exc.public_message
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": detail, "error": type(exc).__name__},
    )


# ==================== LIFECYCLE ====================

@app.on_event("startup")
async def create_indexes():
    await db.quotes.create_index([("id", ASCENDING)], unique=True)
    await db.quotes.create_index([("agency_id", ASCENDING), ("quote_number", ASCENDING)], unique=True)
    await db.quotes.create_index([("agency_id", ASCENDING), ("status", ASCENDING), ("created_at", DESCENDING)])
    await db.event_log.create_index([("entity_id", ASCENDING), ("created_at", ASCENDING)])
    logger.info("[STARTUP] Quote indexes ensured")


@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()


@app.get("/health")
async def health():
    return {"status": "ok", "time": now_iso()}

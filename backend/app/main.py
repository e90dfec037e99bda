"""
Ads Decision Engine — FastAPI Backend
Turns Meta / Google Ads performance into guarded, auditable budget and status changes.
All state persisted to PostgreSQL.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.config import get_settings
from app.database import init_db, check_db_connection
from app.auth import require_auth
from app.routers import executions, recommendations, settings as settings_router, workspaces

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Ads Decision Engine...")
    try:
        await init_db()
        logger.info("Database initialized, all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title="Ads Decision Engine",
    description="Rule-driven recommendations and guarded execution for Meta and Google Ads",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Register Routers (all require auth) ──────────────────────────────
_auth = [Depends(require_auth)]
app.include_router(workspaces.router, prefix="/api/workspaces", tags=["Workspaces"], dependencies=_auth)
app.include_router(recommendations.router, prefix="/api/workspaces", tags=["Recommendations"], dependencies=_auth)
app.include_router(executions.router, prefix="/api/workspaces", tags=["Executions"], dependencies=_auth)
app.include_router(settings_router.router, prefix="/api/settings", tags=["Settings"], dependencies=_auth)


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Ads Decision Engine",
        "database": "connected" if db_ok else "disconnected",
    }

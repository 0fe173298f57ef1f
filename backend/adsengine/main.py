"""
Ads Orchestration Engine — FastAPI Backend
Turns per-goal settings and ready creatives into testing and scaling
campaigns on the Meta ad platform, one orchestration run at a time.
All data persisted to PostgreSQL.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from adsengine.config import get_settings
from adsengine.database import init_db, check_db_connection
from adsengine.auth import require_auth
from adsengine.routers import cron, orchestrator

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting Ads Orchestration Engine ({settings.environment})...")
    try:
        await init_db()
        logger.info("Database initialized — all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so /api/health can report degraded
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title="Ads Orchestration Engine",
    description="Goal-driven testing, winner promotion and budget scaling for Meta ads",
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

# ── Routers ──────────────────────────────────────────────────────────
app.include_router(orchestrator.router, prefix="/api", dependencies=[Depends(require_auth)])
app.include_router(cron.router, prefix="/api")  # Authenticated by CRON_SECRET, not API_KEY


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Ads Orchestration Engine",
        "database": "connected" if db_ok else "disconnected",
    }

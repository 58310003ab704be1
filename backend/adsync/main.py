"""
Google Ads Connector — FastAPI Backend
Connects users' Google Ads accounts over OAuth2, syncs campaign performance
into PostgreSQL, and serves it back with derived metrics.
OAuth tokens and campaign names are encrypted at rest.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from adsync.config import INTEGRATIONS_PREFIX, get_settings
from adsync.crypto import get_cipher
from adsync.database import init_db, check_db_connection
from adsync.routers import integrations

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Google Ads Connector...")
    # Missing or malformed encryption keys abort startup (ConfigurationError)
    cipher = get_cipher()
    logger.info(f"Encryption ready ({len(cipher.previous_keys_hex)} previous key(s) loaded)")
    try:
        await init_db()
        logger.info("Database initialized — all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title="Google Ads Connector",
    description="OAuth-connected Google Ads campaign sync with field-level encryption",
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

# ── Register Routers (JWT auth enforced per endpoint; callback uses OAuth state) ──
app.include_router(
    integrations.router,
    prefix=INTEGRATIONS_PREFIX,
    tags=["Google Ads Integration"],
)


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Google Ads Connector",
        "database": "connected" if db_ok else "disconnected",
    }

from fastapi import FastAPI
import asyncio
import logging
import os
from pathlib import Path
from fastapi.middleware.cors import CORSMiddleware

from beacon.api.router import api_router
from beacon.core.config import settings
from beacon.core.logging_config import setup_logging
from beacon.db.init_db import create_tables, seed_admin
from beacon.api.deps import redis_client
from beacon.services.broadcast_engine import get_broadcast_engine
from beacon.services.broadcast_scheduler import broadcast_loop, cleanup_loop

setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

def _run_migrations_if_needed():
    """Apply Alembic migrations automatically in production if enabled.

    Controlled by env var AUTO_APPLY_MIGRATIONS (default: '1'). Safe to run repeatedly.
    """
    if settings.env.lower() != "prod":
        return
    if os.getenv("AUTO_APPLY_MIGRATIONS", "1") != "1":
        return
    from alembic import command
    from alembic.config import Config
    backend_dir = Path(__file__).resolve().parents[1]
    alembic_ini = backend_dir / "alembic.ini"
    if not alembic_ini.exists():
        logger.warning("alembic.ini not found at %s, skipping auto-migrations", alembic_ini)
        return
    cfg = Config(str(alembic_ini))
    # Ensure script_location resolves correctly when launched from arbitrary CWD
    cfg.set_main_option("script_location", str(backend_dir / "alembic"))
    logger.info("Applying Alembic migrations -> head ...")
    try:
        command.upgrade(cfg, "head")
    except Exception:
        # Keep serving; migrations can be retried manually
        logger.exception("Migration failed")
        return
    logger.info("Migrations applied successfully")

app = FastAPI(title=f"{settings.app_name} API", version="0.1.0")

# Configurable CORS origins (CORS_ORIGINS env). If empty -> dev defaults.
origins = settings.cors_origins
logger.info("Resolved CORS origins: %s", origins)
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)

_background: list[asyncio.Task] = []

@app.on_event("startup")
async def startup():
    _run_migrations_if_needed()
    if settings.env.lower() in {"dev", "development"}:
        create_tables()
        seed_admin()
    if settings.scheduler_enabled:
        engine = get_broadcast_engine()
        _background.append(asyncio.create_task(broadcast_loop(engine), name="broadcast-scheduler"))
        _background.append(asyncio.create_task(cleanup_loop(engine), name="broadcast-cleanup"))
        logger.info("Broadcast scheduler started (every %ss)", settings.scheduler_interval_seconds)

@app.on_event("shutdown")
async def shutdown():
    for task in _background:
        task.cancel()
    await asyncio.gather(*_background, return_exceptions=True)
    _background.clear()
    await get_broadcast_engine().jobs.shutdown()
    await redis_client.aclose()

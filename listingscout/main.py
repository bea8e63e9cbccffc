from fastapi import FastAPI
from listingscout.config import get_settings
from listingscout.db import Base, SessionLocal, engine
from listingscout.orchestrator import RunOrchestrator
from listingscout.api.routes import router as api_router
from listingscout.utils import logger, set_log_level
import listingscout.models  # noqa: F401 ensure models are imported so tables are known

settings = get_settings()
set_log_level(settings.log_level)

# create FastAPI instance
app = FastAPI(title="listingscout")
app.include_router(api_router)

# one orchestrator per run; settings are resolved once at import
app.state.orchestrator_factory = lambda: RunOrchestrator(settings, SessionLocal)


@app.on_event("startup")
def on_startup_create_tables():
    # Ensure database tables are created on startup
    try:
        Base.metadata.create_all(bind=engine)
    except Exception:
        # migrations may own the schema; keep serving
        logger.exception("create_all failed on startup")
    if settings.scheduler_enabled:
        from listingscout.scheduler import start_scheduler
        app.state.scheduler = start_scheduler(settings, app.state.orchestrator_factory)


@app.on_event("shutdown")
def on_shutdown_stop_scheduler():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        scheduler.shutdown(wait=False)

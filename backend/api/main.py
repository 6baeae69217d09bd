"""
PrecastFlow API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from automation.engine import create_automation_engine
from core.config import get_settings

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("PrecastFlow API starting up", version=settings.app_version)
    engine = getattr(app.state, "automation_engine", None)
    if engine is None:
        engine = create_automation_engine(settings)
        app.state.automation_engine = engine
    await engine.start()
    yield
    await engine.stop()
    logger.info("PrecastFlow API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Precast job workflow automation",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from api.v1.routers import automations

app.include_router(automations.router)


@app.get("/health")
async def health_check():
    """Health check endpoint; reports whether reactions run from the change feed."""
    engine = getattr(app.state, "automation_engine", None)
    mode = engine.mode.value if engine is not None and engine.mode is not None else None
    return {"status": "healthy", "version": settings.app_version, "change_feed": mode}

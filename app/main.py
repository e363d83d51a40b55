"""Main FastAPI application"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api import mirrors, servers, sync, users
from app.config import settings
from app.models.base import init_db
from app.scheduler import scheduler

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info("Starting Tracker Mirror Service")
    init_db()
    scheduler.start()
    yield
    logger.info("Stopping Tracker Mirror Service")
    scheduler.stop()


app = FastAPI(
    title="Tracker Mirror Service",
    description="Keep issues of paired Redmine projects in sync",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(servers.router)
app.include_router(users.router)
app.include_router(mirrors.router)
app.include_router(sync.router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "Tracker Mirror"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )

"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health
from api.routes import pipeline as pipeline_routes
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.logging import setup_logging
from pipeline.scheduler import PipelineScheduler
import logging
import uvicorn

setup_logging()

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Place Listing Pipeline",
    description="Operator surface for the resumable place-listing pipeline",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

scheduler = PipelineScheduler()

app.include_router(health.router)
app.include_router(pipeline_routes.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting place listing pipeline API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    if settings.SCHEDULER_ENABLED:
        scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down place listing pipeline API")
    scheduler.stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Place Listing Pipeline",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "status": "/pipeline/status",
            "run_stage": "/pipeline/stages/{stage}/run"
        }
    }


def main():
    """Serve the API with uvicorn on the configured host and port"""
    uvicorn.run("api.main:app", host=settings.API_HOST, port=settings.API_PORT)


if __name__ == "__main__":
    main()

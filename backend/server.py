from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from database import database

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.mongodb import MongoDBJobStore

from formtier import __version__, config
from formtier.services.subscription_lifecycle import InvalidSubscriptionTransition, SubscriptionNotFound
from formtier.services.downgrade_policy import DowngradeConfirmationRequired

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Scheduler with MongoDB job store so jobs survive restarts
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'formtier')

try:
    from pymongo import MongoClient
    mongo_client = MongoClient(mongo_url)
    jobstores = {
        'default': MongoDBJobStore(
            database=db_name,
            collection='scheduled_jobs',
            client=mongo_client
        )
    }
    logger.info(f"MongoDB job store configured: {db_name}.scheduled_jobs")
except Exception as e:
    logger.warning(f"Failed to configure MongoDB job store, using memory store: {e}")
    jobstores = {}

scheduler = AsyncIOScheduler(jobstores=jobstores)

from job_runner import (
    run_usage_period_rollover,
    run_subscription_lifecycle_sweep,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting FormTier API")
    await database.connect()

    # Usage period rollover; rows already rolled over are skipped, so an
    # overlapping run is harmless
    scheduler.add_job(
        run_usage_period_rollover,
        IntervalTrigger(minutes=config.USAGE_ROLLOVER_INTERVAL_MINUTES),
        id="usage_period_rollover",
        name="Usage Period Rollover",
        replace_existing=True
    )

    # Grace expiry -> suspended, long suspension -> pending deletion
    scheduler.add_job(
        run_subscription_lifecycle_sweep,
        IntervalTrigger(minutes=config.LIFECYCLE_SWEEP_INTERVAL_MINUTES),
        id="subscription_lifecycle_sweep",
        name="Subscription Lifecycle Sweep",
        replace_existing=True
    )

    scheduler.start()
    logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down FormTier API")
    scheduler.shutdown(wait=False)
    logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="FormTier API",
    description="Tier entitlement and usage-quota enforcement",
    version=__version__,
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api")
async def root():
    return {
        "service": "FormTier",
        "version": __version__,
        "status": "operational"
    }


@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


@app.exception_handler(SubscriptionNotFound)
async def subscription_not_found_handler(request: Request, exc: SubscriptionNotFound):
    return JSONResponse(status_code=404, content={"detail": exc.message, "error_code": "subscription_not_found"})


@app.exception_handler(InvalidSubscriptionTransition)
async def invalid_transition_handler(request: Request, exc: InvalidSubscriptionTransition):
    logger.warning(f"Rejected subscription transition: {exc.message}")
    return JSONResponse(
        status_code=409,
        content={
            "detail": exc.message,
            "error_code": "invalid_subscription_transition",
            "from_status": exc.from_status,
            "to_status": exc.to_status,
        },
    )


@app.exception_handler(DowngradeConfirmationRequired)
async def downgrade_confirmation_handler(request: Request, exc: DowngradeConfirmationRequired):
    return JSONResponse(
        status_code=409,
        content={
            "detail": exc.message,
            "error_code": "downgrade_confirmation_required",
            "downgrade": exc.check.model_dump(mode="json"),
        },
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )

from fastapi import FastAPI, APIRouter
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from apscheduler.schedulers.asyncio import AsyncIOScheduler
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from database import db, client, check_db_connection
from media_wallet import __version__
from media_wallet.db_init import ensure_indexes
from media_wallet.routes import media_wallet_router, register_error_handlers
from media_wallet.scheduler import setup_scheduler

app = FastAPI(title="Media Wallet - Token Ledger & Subscriptions", version=__version__)

api_router = APIRouter(prefix="/api")


@api_router.get("/health")
async def health():
    db_ok, db_error = await check_db_connection()
    return {"status": "ok" if db_ok else "degraded", "database": db_error or "connected"}


api_router.include_router(media_wallet_router)

app.include_router(api_router)
register_error_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[origin.strip() for origin in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000').split(',')],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Reconcile sweep for users who stop reading their status
scheduler = AsyncIOScheduler()


@app.on_event("startup")
async def startup():
    # Fail fast if database is unavailable
    db_ok, db_error = await check_db_connection()
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(
            f"Cannot start application - database connection failed: {db_error}")

    for line in await ensure_indexes(db):
        logger.info(line)

    if setup_scheduler(scheduler, db):
        scheduler.start()
        logger.info("Scheduler started")


@app.on_event("shutdown")
async def shutdown():
    if scheduler.running:
        scheduler.shutdown(wait=False)
    client.close()

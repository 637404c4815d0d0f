"""
Marketplace application entry point: FastAPI instance, lifespan and router
registration.
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

from marketplace.database import Database

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    force=True,
)

logger = logging.getLogger(__name__)


# ── Lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the database handle and schema on startup."""
    db = getattr(app.state, "db", None)
    if db is None:
        db = Database()
        app.state.db = db
    db.init_schema()
    logger.info("Database ready at %s", db.path)
    yield


app = FastAPI(
    title="Marketplace",
    description="Order lifecycle and settlement service",
    lifespan=lifespan,
)

# ── CORS ──────────────────────────────────────────────────

if os.environ.get("CORS_ENABLED", "0") == "1":
    from fastapi.middleware.cors import CORSMiddleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "http://localhost:5173").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# ── Routers ───────────────────────────────────────────────

from marketplace.routes.orders import router as orders_router
from marketplace.routes.webhooks import router as webhooks_router
from marketplace.routes.wallet import router as wallet_router
from marketplace.routes.admin import router as admin_router

app.include_router(orders_router)
app.include_router(webhooks_router)
app.include_router(wallet_router)
app.include_router(admin_router)


# ── Health ────────────────────────────────────────────────

@app.get("/health")
async def health_check():
    return {"status": "ok"}

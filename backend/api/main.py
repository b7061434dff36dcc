"""
FastAPI application entry point.

Run with: uvicorn api.main:app --reload
"""
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pathlib import Path
from dotenv import load_dotenv
from sqlalchemy.exc import SQLAlchemyError

# Load environment variables from backend/.env (optional) before other imports that read env
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(env_path)

from api.dependencies import shutdown_cropper
from api.routes import cache, crops
from db import init_db
from services.image_snapshot import register_heif_opener

logger = logging.getLogger(__name__)

# Register HEIF/HEIC opener at startup (for iPhone photos)
heif_available = register_heif_opener()


# Create app
app = FastAPI(
    title="Smart Crop API",
    description="API for content-aware crop decisions with a persistent cache",
    version="0.1.0",
)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure properly for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(crops.router, prefix="/crops", tags=["crops"])
app.include_router(cache.router, prefix="/cache", tags=["cache"])


@app.on_event("startup")
def startup_event():
    """Initialize database tables on startup."""
    try:
        init_db()
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Crop cache database unavailable, crops will not be cached: %s", exc)
    logger.info("Smart crop API started (HEIF support: %s)", heif_available)


@app.on_event("shutdown")
def shutdown_event():
    shutdown_cropper()


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "Smart Crop API"}


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "heif": heif_available}

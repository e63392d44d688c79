"""ITSM Core FastAPI application - change management workflow."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..config import get_settings
from ..database import init_db
from .routers import change_requests

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("itsm-core")

logger.info(f"Starting {settings.app_name} API")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create missing tables (Alembic manages the schema in production)."""
    init_db()
    yield


# Create FastAPI app
app = FastAPI(
    title="ITSM Core API",
    description="Change management approval workflow",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(change_requests.router, prefix="/api/v1/change-requests")


@app.get("/")
def root():
    """Root endpoint with server info."""
    return {
        "name": "ITSM Core API",
        "version": "1.0.0",
        "docs": "/docs",
        "description": "Change management approval workflow"
    }


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}

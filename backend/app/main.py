"""Freight TMS - Load Lifecycle & Settlement API"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from app.core.config import get_settings
from app.core.logging import configure_logging, logger
from app.routers import tms
from app.services.session import SessionRegistry


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    app.state.tms_registry = SessionRegistry(settings=settings)
    logger.info(
        "TMS API starting",
        version="0.1.0",
        app_mode=settings.normalized_app_mode(),
        db_path=settings.tms_db_path,
    )
    yield
    # Shutdown
    app.state.tms_registry.close()
    logger.info("TMS API shutting down")


app = FastAPI(
    title="Freight TMS API",
    description="Load lifecycle, invoicing, and driver settlement engine for trucking operations",
    version="0.1.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(tms.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Freight TMS API",
        "version": "0.1.0",
        "description": "Load lifecycle and settlement engine",
        "endpoints": {
            "loads": "/tms/loads",
            "employees": "/tms/employees",
            "invoices": "/tms/invoices",
            "settlements": "/tms/settlements",
            "audit": "/tms/audit",
            "tasks": "/tms/tasks",
            "reports": "/tms/reports/period",
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}

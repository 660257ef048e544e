"""
HVAC Runtime Engine - FastAPI Application
Main entry point for the API server
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn
import structlog
from contextlib import asynccontextmanager

from hvac_runtime.api.routes import devices, health
from hvac_runtime.core.config import settings
from hvac_runtime.core.logging import configure_logging
from hvac_runtime.database.connection import init_database
from hvac_runtime.engine.errors import PersistenceError

configure_logging()

logger = structlog.get_logger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("Starting HVAC Runtime Engine API")
    # Startup
    init_database()
    yield
    # Shutdown
    logger.info("Shutting down HVAC Runtime Engine API")

# Create FastAPI application
app = FastAPI(
    title="HVAC Runtime Engine API",
    description="Device registration and runtime session inspection for the HVAC runtime engine",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, prefix="/api/v1", tags=["health"])
app.include_router(devices.router, prefix="/api/v1", tags=["devices"])

@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "HVAC Runtime Engine API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/v1/health"
    }

@app.exception_handler(PersistenceError)
async def persistence_exception_handler(request, exc):
    logger.error("Store unavailable", operation=exc.operation, device_id=exc.device_id, path=request.url.path)
    return JSONResponse(
        status_code=503,
        content={"detail": "Runtime store unavailable"}
    )

@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler"""
    logger.error("Unhandled exception", exc_info=exc, path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    uvicorn.run(
        "hvac_runtime.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )

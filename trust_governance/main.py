"""
Main FastAPI application for the Trust & Governance service
"""
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from trust_governance.config import settings
from trust_governance.db.database import init_db
from trust_governance.errors import GovernanceError
from trust_governance.api import (
    system,
    trust,
    invites,
    promotions,
    appeals,
    jury,
    governance
)

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.APP_DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    logger.info("Starting Trust & Governance Service...")
    try:
        init_db()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Error initializing database: {e}")

    yield

    # Shutdown
    logger.info("Shutting down Trust & Governance Service...")


app = FastAPI(
    title="Trust & Governance Service",
    description="Trust scoring, invite graph policing, promotion endorsements and appeal juries",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(GovernanceError)
async def governance_exception_handler(request: Request, exc: GovernanceError):
    """Expected failures surface their message verbatim"""
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())}
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions without leaking detail"""
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if settings.APP_DEBUG else "An unexpected error occurred"
        }
    )


# Include routers
app.include_router(system.router, tags=["System"])
app.include_router(trust.router, prefix="/trust", tags=["Trust"])
app.include_router(invites.router, prefix="/invites", tags=["Invites"])
app.include_router(promotions.router, prefix="/promotions", tags=["Promotions"])
app.include_router(appeals.router, prefix="/appeals", tags=["Appeals"])
app.include_router(jury.router, prefix="/jury", tags=["Jury"])
app.include_router(governance.router, prefix="/governance", tags=["Governance"])


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": "Trust & Governance",
        "version": "1.0.0",
        "status": "running"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "trust_governance.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.APP_DEBUG
    )

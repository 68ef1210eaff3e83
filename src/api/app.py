"""MindFit Intake API - Main Entry Point

Referral workflow, encrypted intake package exports and workflow automation.
All PHI handling follows encryption and audit logging requirements.
"""

import os

import structlog
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.api.automation import get_scheduler, router as automation_router
from src.api.intake_packages import router as intake_packages_router
from src.api.referrals import router as referrals_router

logger = structlog.get_logger(__name__)

VERSION = "0.1.0"

# Create FastAPI app with environment-aware configuration
app = FastAPI(
    title="MindFit - Intake Packages & Referral Workflow",
    version=VERSION,
    description="HIPAA-compliant referral workflow and encrypted intake package export",
    docs_url="/docs" if os.environ.get("MINDFIT_ENV") != "production" else None,
    redoc_url="/redoc" if os.environ.get("MINDFIT_ENV") != "production" else None,
)


# =============================================================================
# Health Checks
# =============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint for the load balancer"""
    return {
        "status": "healthy",
        "service": "mindfit-intake",
        "version": VERSION,
    }


# =============================================================================
# Error Handlers
# =============================================================================

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    """Return structured validation errors without echoing submitted values"""
    return JSONResponse(
        status_code=422,
        content={
            "detail": "Invalid request",
            "type": "validation_error",
            "fields": [".".join(str(p) for p in err["loc"]) for err in exc.errors()],
        },
    )


# =============================================================================
# API Routers
# =============================================================================

app.include_router(referrals_router)
app.include_router(intake_packages_router)
app.include_router(automation_router)


# =============================================================================
# Startup/Shutdown Events
# =============================================================================

def scheduler_enabled() -> bool:
    return os.environ.get("MINDFIT_SCHEDULER_ENABLED", "true").lower() == "true"


@app.on_event("startup")
async def startup_event():
    """Start the automation scheduler"""
    logger.info("api_starting", version=VERSION, scheduler=scheduler_enabled())
    if scheduler_enabled():
        get_scheduler().start()


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the automation scheduler"""
    if scheduler_enabled():
        await get_scheduler().stop()
    logger.info("api_stopped")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

"""FastAPI application for the rank tracker."""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from rank_tracker.core.config import settings
from rank_tracker.core.redis import close_redis
from rank_tracker.scheduler.supervisor import Supervisor
import logging
import time
import sys

# Import routers
from rank_tracker.api.routes import health, quota, rank_checks

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Rank Tracker API", version="1.0.0")
app.state.limiter = rank_checks.limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.on_event("startup")
async def startup_event():
    """Build the supervisor and start the rank check schedule."""
    logger.info("Application starting up...")

    supervisor = Supervisor()
    app.state.supervisor = supervisor
    status = await supervisor.initialize()

    if status["actually_ready"]:
        logger.info("✓ Rank check subsystem ready")
    else:
        logger.warning(f"✗ Rank check subsystem not ready: {status['service_states']}")

    logger.info("Application startup complete")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop background work and release connections."""
    supervisor = getattr(app.state, "supervisor", None)
    if supervisor is not None:
        await supervisor.shutdown()
    await close_redis()
    logger.info("Application shutdown complete")


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests and responses."""
    start_time = time.time()

    logger.info(f"→ {request.method} {request.url.path}")
    logger.debug(f"  Query params: {dict(request.query_params)}")

    try:
        response = await call_next(request)
        process_time = time.time() - start_time

        logger.info(f"← {request.method} {request.url.path} - Status: {response.status_code} - Time: {process_time:.3f}s")

        return response
    except Exception as e:
        process_time = time.time() - start_time
        logger.error(f"← {request.method} {request.url.path} - ERROR after {process_time:.3f}s: {str(e)}")
        raise

# Add global exception handler to ensure CORS headers are sent even on errors
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions and ensure CORS headers are sent."""
    logger.error(f"Unhandled exception in {request.method} {request.url.path}")
    logger.error(f"Exception type: {type(exc).__name__}")
    logger.error(f"Exception message: {str(exc)}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "internal_error",
            "message": str(exc) if settings.log_level == "DEBUG" else "Internal server error"
        },
        headers={
            "Access-Control-Allow-Origin": request.headers.get("origin", "*"),
            "Access-Control-Allow-Credentials": "true",
        }
    )

# Configure CORS
logger.info(f"Configuring CORS with origins: {settings.cors_origins_list}")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include routers
app.include_router(health.router)
app.include_router(rank_checks.router)
app.include_router(quota.router)


@app.get("/")
async def root():
    """Service banner."""
    return {"status": "ok", "service": "rank-tracker-api"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.backend_port)

"""FastAPI application main entry point."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .routes import callbacks, pool, sessions, state
from ..services.config import get_config
from ..services.database import init_database
from ..services.pool_manager import get_pool_manager
from ..services.scheduler import get_scheduler
from ..services.session_orchestrator import get_orchestrator

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Sandbox Session Control Plane",
    description="Spawns agent sessions in ephemeral environments and tracks them to completion",
    version="0.1.0",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Initialize the schema, register scheduler jobs and start the scheduler loop."""
    config = get_config()
    logger.info(f"Running startup: database at {config.database_path}, backend {config.sandbox_backend}")
    init_database()
    get_orchestrator().register_jobs()
    get_scheduler().start()
    if get_pool_manager().ensure_maintenance_scheduled():
        logger.info(f"Warm pool enabled (target {config.pool_target_size} for {config.sandbox_template})")
    if not config.sandbox_jwt_secret:
        logger.warning("SANDBOX_JWT_SECRET is not set; sandbox callbacks are unauthenticated")
    logger.info("Startup complete")


@app.on_event("shutdown")
async def shutdown_event():
    await get_scheduler().stop()


# Error handlers
@app.exception_handler(404)
async def not_found_handler(request: Request, exc: Exception):
    """Handle 404 errors."""
    return JSONResponse(
        status_code=404,
        content={"error": "Not found", "detail": getattr(exc, "detail", str(exc))},
    )


@app.exception_handler(409)
async def conflict_handler(request: Request, exc: Exception):
    """Handle 409 Conflict errors."""
    return JSONResponse(
        status_code=409,
        content={"error": "Conflict", "detail": getattr(exc, "detail", str(exc))},
    )


@app.exception_handler(500)
async def internal_error_handler(request: Request, exc: Exception):
    """Handle 500 errors."""
    logger.exception(f"Unhandled error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "detail": str(exc)},
    )


app.include_router(sessions.router)
app.include_router(callbacks.router)
app.include_router(state.router)
app.include_router(pool.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


def run(host: str = "0.0.0.0", port: int = 8000) -> None:
    """Run the control plane with uvicorn."""
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(app, host=host, port=port, log_level="info", access_log=True)


if __name__ == "__main__":
    run()


__all__ = ["app", "run"]

"""
PostureCare Backend API
Webcam Posture Monitoring Service

FastAPI application entry point with REST endpoints and WebSocket streams
for live posture classification.
"""

import logging
import sys
import time
import traceback
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from core.config import settings

# ============================================
# Configure Root Logger First
# ============================================
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[logging.StreamHandler(sys.stdout)]
)

# Service routers
from posture_service.router import router as posture_router, get_services

# Core utilities
from core.websocket import connection_manager
from shared.utils import setup_logger

# Setup logging
log_level = logging.DEBUG if settings.DEBUG else logging.INFO
logger = setup_logger("posturecare.main", level=log_level)
request_logger = setup_logger("posturecare.requests", level=log_level)


# ============================================
# Request Logging Middleware
# ============================================

class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log all incoming requests and responses with timing."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        client_ip = request.client.host if request.client else "unknown"
        query_string = f"?{request.url.query}" if request.url.query else ""

        request_logger.info(f"➡️  {request.method} {request.url.path}{query_string}")
        request_logger.debug(f"    Client: {client_ip}")

        try:
            response = await call_next(request)

            process_time = (time.time() - start_time) * 1000

            if response.status_code < 300:
                status_emoji = "✅"
            elif response.status_code < 400:
                status_emoji = "↪️"
            elif response.status_code < 500:
                status_emoji = "⚠️"
            else:
                status_emoji = "❌"

            request_logger.info(
                f"{status_emoji} {request.method} {request.url.path} → {response.status_code} ({process_time:.1f}ms)"
            )

            return response
        except Exception as e:
            process_time = (time.time() - start_time) * 1000
            request_logger.error(f"💥 {request.method} {request.url.path} → ERROR: {type(e).__name__}: {str(e)} ({process_time:.1f}ms)")
            request_logger.error(traceback.format_exc())
            raise


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown."""
    # ===== STARTUP =====
    logger.info(f"🚀 {settings.APP_NAME} API starting up...")

    # Data directory for the event log and baselines
    Path(settings.DATA_PATH).mkdir(parents=True, exist_ok=True)
    get_services()

    # Start WebSocket heartbeat
    await connection_manager.start_heartbeat()

    logger.info(f"✅ {settings.APP_NAME} API ready!")

    yield  # Application runs here

    # ===== SHUTDOWN =====
    logger.info(f"👋 {settings.APP_NAME} API shutting down...")

    await connection_manager.stop_heartbeat()

    session_handler, stream_handler = get_services()
    stream_handler.cleanup()
    for user_id in list(session_handler.active_sessions):
        session_handler.cleanup_session(user_id)

    logger.info("✅ Shutdown complete")


app = FastAPI(
    title=f"{settings.APP_NAME} API",
    description="Webcam posture monitoring - rule-based classification with live streaming",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "websocket_connections": connection_manager.connection_count
    }


@app.get("/stats")
async def get_stats():
    """Get service statistics."""
    session_handler, _ = get_services()
    return {
        "websocket": connection_manager.get_stats(),
        "sessions": session_handler.get_stats()
    }


# Include service routers
app.include_router(posture_router, prefix="/api/posture", tags=["Posture Service"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)

"""FastAPI main application - skill-exchange matching queue API"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel

from src.api.services import ServiceContainer, build_services
from src.api.websocket import queue_websocket_endpoint
from src.config import configure_logging, settings
from src.data.schema import Match, MatchingRequest, QueueStats, QueueStatus
from src.matching.errors import InfrastructureError, NotFoundError, ValidationError


# ============================================
# Pydantic Models
# ============================================

class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str = "1.0.0"
    queue_size: int = 0
    connected_clients: int = 0


class MatchResponse(BaseModel):
    """Result of a match attempt (match is null when nobody qualified)"""
    match: Optional[Match] = None


# ============================================
# App factory
# ============================================

def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the FastAPI application

    Args:
        services: Pre-built services (built from settings if None)
    """
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup:
            - Install the log sink
            - Start the cleanup loops and the queue notifier

        Shutdown:
            - Stop background loops
        """
        configure_logging(settings.log_level)
        logger.info("Starting up matching queue API...")
        await services.start()
        logger.info("✅ Matching queue API started successfully")

        yield

        logger.info("Shutting down matching queue API...")
        await services.stop()
        logger.info("✅ Matching queue API shutdown complete")

    app = FastAPI(
        title="Skill Exchange Matching API",
        description="Priority matching queue for peer learning and teaching sessions",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ============================================
    # Error mapping
    # ============================================

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"error": exc.message, "details": exc.details})

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"error": exc.message, "details": exc.details})

    @app.exception_handler(InfrastructureError)
    async def infrastructure_error_handler(request: Request, exc: InfrastructureError):
        logger.warning(f"Infrastructure error on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=503, content={"error": exc.message, "details": exc.details})

    # ============================================
    # System
    # ============================================

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check():
        """Returns API status, queue size and connected clients"""
        return HealthResponse(
            status="ok",
            queue_size=len(services.store),
            connected_clients=services.notifier.connected_count,
        )

    @app.get("/", tags=["System"])
    async def root():
        return {
            "name": "Skill Exchange Matching API",
            "version": "1.0.0",
            "endpoints": {
                "health": "/health",
                "docs": "/docs",
                "queue": "/api/v1/queue",
                "websocket": "/ws/queue/{user_id}",
            },
        }

    # ============================================
    # Queue Endpoints
    # ============================================

    @app.post("/api/v1/queue/join", response_model=QueueStatus, tags=["Queue"])
    async def join_queue(request: MatchingRequest):
        """Join (or re-join) the matching queue"""
        return await services.engine.add_to_queue(request)

    @app.get("/api/v1/queue/stats", response_model=QueueStats, tags=["Queue"])
    async def queue_stats():
        return await services.engine.get_queue_stats()

    @app.get("/api/v1/queue/health", tags=["Queue"])
    async def queue_health():
        """Background cleanup health report"""
        return await services.cleanup.get_health_status()

    @app.post("/api/v1/queue/cleanup", tags=["Queue"])
    async def cleanup_queue():
        """Remove expired entries now"""
        return await services.engine.cleanup_expired_queue()

    @app.get("/api/v1/queue/{user_id}/status", response_model=QueueStatus, tags=["Queue"])
    async def queue_status(user_id: str):
        status = await services.engine.get_status(user_id)
        if status is None:
            raise HTTPException(status_code=404, detail="User is not in the queue")
        return status

    @app.delete("/api/v1/queue/{user_id}", tags=["Queue"])
    async def leave_queue(user_id: str):
        await services.engine.remove_from_queue(user_id)
        return {"success": True}

    # ============================================
    # Matching
    # ============================================

    @app.post("/api/v1/match/find", response_model=MatchResponse, tags=["Matching"])
    async def find_match(request: MatchingRequest):
        """
        Find and claim the best partner for a request

        Returns {"match": null} when nobody qualifies; the requester stays queued.
        """
        match = await services.engine.find_match(request)
        return MatchResponse(match=match)

    # ============================================
    # WebSocket Endpoint
    # ============================================

    @app.websocket("/ws/queue/{user_id}")
    async def websocket_queue(websocket: WebSocket, user_id: str):
        """
        Connect via: ws://localhost:8000/ws/queue/{user_id}
        """
        await queue_websocket_endpoint(websocket, user_id, services)

    return app


app = create_app()


# ============================================
# Run with: uvicorn src.api.main:app --reload
# ============================================

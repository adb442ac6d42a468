"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from linebridge.api.events import router as events_router
from linebridge.api.worker import router as worker_router
from linebridge.api.debug import router as debug_router
from linebridge.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(events_router)
api_router.include_router(worker_router)
api_router.include_router(debug_router)
api_router.include_router(health_router)

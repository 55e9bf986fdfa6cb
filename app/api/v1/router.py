"""API v1 router configuration."""

from fastapi import APIRouter

from app.api.v1.endpoints import appointments, health, queue, schedules

api_router = APIRouter()

# Include routers
api_router.include_router(health.router, tags=["Health"])
api_router.include_router(appointments.router, prefix="/appointments", tags=["Appointments"])
api_router.include_router(queue.router, prefix="/queue", tags=["Queue"])
api_router.include_router(schedules.router, prefix="/schedules", tags=["Schedules"])

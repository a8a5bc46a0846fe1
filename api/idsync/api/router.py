from fastapi import APIRouter

from idsync.api.routes import admin, auth_events, health, reconciliation

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(auth_events.router, prefix="/auth-events", tags=["provider"])
api_router.include_router(reconciliation.router, prefix="/reconciliation", tags=["worker"])
api_router.include_router(admin.router, prefix="/admin", tags=["operator"])

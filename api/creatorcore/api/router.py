from fastapi import APIRouter

from creatorcore.api.routes import dashboard, health, sync

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(sync.router, prefix="/creatorcore", tags=["cron"])
api_router.include_router(dashboard.router, prefix="/dashboard", tags=["dashboard"])

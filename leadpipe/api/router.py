from fastapi import APIRouter

from leadpipe.api.routes import activities, health, metrics, webhooks

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(metrics.router, tags=["ops"])
api_router.include_router(webhooks.router, tags=["webhooks"])
api_router.include_router(activities.router, tags=["crm"])

"""API v1 router combining all route modules."""

from fastapi import APIRouter

from snowball.api.v1 import health, snowball

api_router = APIRouter()

# Include health check routes (no prefix)
api_router.include_router(health.router)

# Uploads, event status and growth analytics (identity from gateway headers)
api_router.include_router(
    snowball.router,
    prefix="/snowball",
    tags=["snowball"],
)

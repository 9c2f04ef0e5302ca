"""API v1 routers."""

from fastapi import APIRouter

from .secrets import router as secrets_router

# Create v1 router that includes all v1 endpoints
router = APIRouter(prefix="/v1")

router.include_router(secrets_router)

__all__ = ["router", "secrets_router"]

"""API v1 router."""

from fastapi import APIRouter

from berth.api.v1.access import router as access_router
from berth.api.v1.admin import router as admin_router
from berth.api.v1.instances import router as instances_router

router = APIRouter()

# Include sub-routers
router.include_router(instances_router, prefix="/instances", tags=["instances"])
router.include_router(access_router, prefix="/access", tags=["access"])
router.include_router(admin_router, prefix="/admin", tags=["admin"])

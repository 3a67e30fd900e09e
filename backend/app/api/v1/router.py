from fastapi import APIRouter

from backend.app.api.v1.endpoints.health import router as health_router
from backend.app.api.v1.endpoints.demands import router as demands_router
from backend.app.api.v1.endpoints.demand_sessions import router as demand_sessions_router
from backend.app.api.v1.endpoints.inventory import router as inventory_router
from backend.app.api.v1.endpoints.shipments import router as shipments_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(demands_router, tags=["demands"])
router.include_router(demand_sessions_router, tags=["demand_sessions"])
router.include_router(inventory_router, tags=["inventory"])
router.include_router(shipments_router, tags=["shipments"])

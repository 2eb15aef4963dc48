from fastapi import APIRouter

from driftwatch.api.routes import alerts, backlog, failures, health, monitors, reviews, sweeps

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(monitors.router, prefix="/monitors", tags=["monitors"])
api_router.include_router(backlog.router, prefix="/backlog", tags=["backlog"])
api_router.include_router(reviews.router, prefix="/reviews", tags=["workflow"])
api_router.include_router(alerts.router, prefix="/alerts", tags=["workflow"])
api_router.include_router(failures.router, prefix="/failures", tags=["workflow"])
api_router.include_router(sweeps.router, prefix="/sweeps", tags=["sweeps"])

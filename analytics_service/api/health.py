from datetime import datetime, timezone

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from analytics_service.api.deps import get_services
from analytics_service.core.errors import IndexUnavailable
from analytics_service.services.container import Services

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health_check(services: Services = Depends(get_services)):
    """Service liveness"""
    return {
        "status": "healthy",
        "app": services.settings.app_name,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "streams": services.hub.stats()["active_connections"],
    }


@router.get("/index")
async def index_health_check(services: Services = Depends(get_services)):
    """Aggregation index liveness, independent of the service itself"""
    mirror_failures = services.pipeline.mirror_failures
    try:
        stats = await services.index.health()
    except IndexUnavailable as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unavailable", "error": e.message, "mirror_failures": mirror_failures}
        )
    return {"status": "healthy", **stats, "mirror_failures": mirror_failures}

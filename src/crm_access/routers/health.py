from datetime import UTC, datetime

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from crm_access.dependencies.crm_api_client import get_crm_client_for, get_grant_cache

router = APIRouter(tags=["Health"])


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns:
        - status: overall health status
        - timestamp: current server time
        - crm_api: upstream CRM API reachability
        - grant_cache: whether the Redis grant cache is active
        - version: API version
    """
    health_status = {
        "status": "healthy",
        "timestamp": datetime.now(UTC).isoformat(),
        "service": "crm-access-core",
        "version": "1.0.0",
        "grant_cache": "enabled" if get_grant_cache().enabled else "disabled",
    }

    if await get_crm_client_for(None).is_healthy():
        health_status["crm_api"] = "reachable"
    else:
        health_status["crm_api"] = "unreachable"
        health_status["status"] = "unhealthy"
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=health_status)

    return health_status


@router.get("/readiness", status_code=status.HTTP_200_OK)
async def readiness_check():
    """
    Readiness check for Kubernetes/Docker orchestration.
    Returns 200 if the service is ready to accept traffic.
    """
    return {"ready": True}


@router.get("/liveness", status_code=status.HTTP_200_OK)
async def liveness_check():
    """
    Liveness check for Kubernetes/Docker orchestration.
    Returns 200 if the service is alive.
    """
    return {"alive": True}

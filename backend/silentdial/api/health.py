"""
SilentDial - Health Check Endpoints

System health monitoring endpoints for load balancers, monitoring,
and operational visibility.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Request

from silentdial import __version__
from silentdial.core.call_service import EmergencyCallService

router = APIRouter(prefix="/api/system", tags=["system"])


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@router.get("/health")
async def health_check(request: Request) -> dict:
    """
    Overall system health check.

    Returns:
        - status: "healthy" or "degraded"
        - checks: Individual component statuses
        - timestamp: Current server time

    The service is degraded (not down) when the voice integration is not
    configured: intake still works in fallback mode.
    """
    service: EmergencyCallService = request.app.state.call_service
    settings = request.app.state.settings
    health = service.health()

    checks = {
        "registry": {
            "status": "healthy",
            "sessions": health["sessions"],
            "active_calls": health["active_calls"],
        },
        "rate_limiter": {
            "status": "healthy" if health["rate_limiter_running"] else "degraded",
            "sweep_running": health["rate_limiter_running"],
        },
        "voice": {
            "status": "healthy" if health["provider_configured"] else "degraded",
            "provider": health["provider"],
            "configured": health["provider_configured"],
        },
    }

    all_healthy = all(c["status"] == "healthy" for c in checks.values())

    return {
        "status": "healthy" if all_healthy else "degraded",
        "timestamp": _utc_timestamp(),
        "version": __version__,
        "environment": settings.app_env,
        "checks": checks,
    }


@router.get("/ready")
async def readiness_check(request: Request) -> dict:
    """
    Readiness check for container orchestration.

    Ready once the call service is wired and not shutting down.
    """
    coordinator = getattr(request.app.state, "shutdown", None)
    ready = hasattr(request.app.state, "call_service") and not (
        coordinator is not None and coordinator.is_shutting_down
    )
    return {
        "ready": ready,
        "timestamp": _utc_timestamp(),
    }


@router.get("/live")
async def liveness_check() -> dict:
    """Liveness check. Returns 200 while the process serves requests."""
    return {
        "alive": True,
        "timestamp": _utc_timestamp(),
    }

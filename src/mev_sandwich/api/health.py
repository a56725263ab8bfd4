"""Health check API endpoints for monitoring and load balancer integration."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request, Response, status

logger = logging.getLogger(__name__)

# Create the FastAPI router
router = APIRouter()


def _component(request: Request, name: str) -> Any:
    return getattr(request.app.state, name, None)


@router.get("/health")
def basic_health_check() -> Dict[str, Any]:
    """Basic health check that returns system status."""
    return {
        "status": "healthy",
        "message": "Service is operational",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.get("/health/live")
def liveness_probe() -> Dict[str, Any]:
    """Kubernetes liveness probe."""
    return {
        "status": "alive",
        "message": "Application is responsive"
    }


@router.get("/health/ready")
def readiness_probe(request: Request, response: Response) -> Dict[str, Any]:
    """Ready once the coordinator is running and not degraded."""
    coordinator = _component(request, "coordinator")
    if coordinator is None or not coordinator.is_running:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not_ready", "message": "Coordinator is not running"}
    if coordinator.is_degraded:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "degraded", "message": "Gas price feed is failing"}
    return {
        "status": "ready",
        "message": "Application is ready to serve traffic"
    }


@router.get("/health/detailed")
async def detailed_health_check(request: Request) -> Dict[str, Any]:
    """Detailed health check with per-component status."""
    checks: Dict[str, Dict[str, Any]] = {}
    
    provider = _component(request, "provider")
    if provider is not None:
        chain = await provider.get_chain_health()
        checks["blockchain"] = {"status": chain.get("status", "unknown"), **chain}
    else:
        checks["blockchain"] = {"status": "unhealthy", "message": "Provider not initialized"}
    
    coordinator = _component(request, "coordinator")
    if coordinator is not None:
        checks["coordinator"] = {
            "status": "degraded" if coordinator.is_degraded else "healthy",
            "running": coordinator.is_running,
            "paused": coordinator.is_paused,
            "in_flight": len(coordinator.in_flight),
            "execution_enabled": coordinator.executor is not None
        }
    else:
        checks["coordinator"] = {"status": "unhealthy", "message": "Coordinator not initialized"}
    
    monitor = _component(request, "mempool_monitor")
    if monitor is not None:
        checks["mempool"] = {
            "status": "healthy" if monitor.is_connected else "degraded",
            "connected": monitor.is_connected,
            "reconnect_attempts": monitor.reconnect_attempts
        }
    else:
        checks["mempool"] = {"status": "unhealthy", "message": "Mempool monitor not initialized"}
    
    summary = {"total": len(checks), "healthy": 0, "degraded": 0, "unhealthy": 0}
    for check in checks.values():
        key = check["status"] if check["status"] in ("healthy", "degraded") else "unhealthy"
        summary[key] += 1
    
    if summary["unhealthy"]:
        overall = "unhealthy"
    elif summary["degraded"]:
        overall = "degraded"
    else:
        overall = "healthy"
    
    return {
        "status": overall,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
        "summary": summary
    }


@router.get("/stats")
def statistics(request: Request) -> Dict[str, Any]:
    """Counters from every pipeline component."""
    stats: Dict[str, Any] = {}
    for name in ("coordinator", "mempool_monitor", "registry", "classifier", "executor", "nonce_manager"):
        component = _component(request, name)
        if component is not None:
            stats[name] = component.get_stats()
    return stats

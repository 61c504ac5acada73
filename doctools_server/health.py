"""
Health check endpoints for process supervisors and load balancers.

Both paths skip the security gateway.
"""
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from doctools_server.logging_config import get_logger
from doctools_server.services import TrustServices, get_services

router = APIRouter(prefix="/api", tags=["health"])

START_TIME = time.time()


def _format_uptime(seconds: float) -> str:
    """Format uptime in human-readable format"""
    days = int(seconds // 86400)
    hours = int((seconds % 86400) // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    if days > 0:
        return f"{days}d {hours}h {minutes}m {secs}s"
    elif hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    elif minutes > 0:
        return f"{minutes}m {secs}s"
    else:
        return f"{secs}s"


def check_directory(path: Path) -> Dict[str, Any]:
    """A persistence directory is ready when it exists and is writable."""
    if not path.is_dir():
        return {"status": "unhealthy", "error": f"{path} does not exist"}
    if not os.access(path, os.W_OK):
        return {"status": "unhealthy", "error": f"{path} is not writable"}
    return {"status": "healthy", "path": str(path)}


@router.get("/health")
async def health_check():
    """
    Basic health check endpoint.
    Returns 200 if service is running.
    """
    uptime = time.time() - START_TIME
    return {
        "success": True,
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(uptime, 2),
        "uptimeHuman": _format_uptime(uptime),
    }


@router.get("/ready")
async def readiness_check(services: TrustServices = Depends(get_services)):
    """
    Readiness check endpoint.
    Returns 200 only if the data and log directories are usable.
    """
    logger = get_logger("health")

    checks = {
        "dataDir": check_directory(services.settings.data_dir),
        "logDir": check_directory(services.settings.log_dir),
    }
    is_ready = all(check["status"] == "healthy" for check in checks.values())

    if not is_ready:
        logger.warning("readiness_check_failed", checks=checks)

    return JSONResponse(
        content={
            "ready": is_ready,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": checks,
        },
        status_code=200 if is_ready else 503,
    )

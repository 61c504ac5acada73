"""
Security administration endpoints.

All routes except check-action require an admin session.
"""
from typing import Any, Dict

from fastapi import APIRouter, Depends, Query, Request

from doctools_server.auth import require_admin
from doctools_server.logging_config import get_logger
from doctools_server.models import ActionCheckRequest, BlockIPRequest, UnblockIPRequest
from doctools_server.rate_limiting import LOGIN_RATE_LIMIT, get_client_ip
from doctools_server.request_log import entries_to_dicts
from doctools_server.services import TrustServices, get_services

logger = get_logger("security")

router = APIRouter(prefix="/api/security", tags=["security"])

MAX_LOG_LIMIT = 500


@router.get("/status")
async def security_status(
    admin: Dict[str, Any] = Depends(require_admin),
    services: TrustServices = Depends(get_services),
):
    """Current block list, traffic summary and secure/warning verdict."""
    return {"success": True, "security": services.gateway.security_status()}


@router.get("/logs")
async def security_logs(
    limit: str = Query(default="100"),
    admin: Dict[str, Any] = Depends(require_admin),
    services: TrustServices = Depends(get_services),
):
    """Most recent request log entries, newest first (at most 500)."""
    try:
        requested = int(limit)
    except ValueError:
        requested = 100
    if requested <= 0:
        requested = 100
    logs = services.audit_log.recent(min(requested, MAX_LOG_LIMIT))
    return {"success": True, "logs": entries_to_dicts(logs), "total": len(logs)}


@router.post("/block")
async def block_ip(
    body: BlockIPRequest,
    admin: Dict[str, Any] = Depends(require_admin),
    services: TrustServices = Depends(get_services),
):
    duration = body.duration or services.settings.block_duration_ms
    entry = services.registry.block(body.ip, duration)
    logger.info("manual_block", ip=body.ip, duration_ms=duration)
    return {
        "success": True,
        "message": f"IP {body.ip} blocked for {duration / 1000:g} seconds",
        "blockedUntil": entry.blocked_until,
    }


@router.post("/unblock")
async def unblock_ip(
    body: UnblockIPRequest,
    admin: Dict[str, Any] = Depends(require_admin),
    services: TrustServices = Depends(get_services),
):
    was_blocked = services.registry.unblock(body.ip)
    logger.info("manual_unblock", ip=body.ip, was_blocked=was_blocked)
    return {"success": True, "message": f"IP {body.ip} unblocked", "wasBlocked": was_blocked}


@router.get("/threats")
async def threat_analysis(
    admin: Dict[str, Any] = Depends(require_admin),
    services: TrustServices = Depends(get_services),
):
    """Threat categories over the last 500 requests."""
    return {"success": True, **services.audit_log.analyze_threats(MAX_LOG_LIMIT)}


@router.get("/settings")
async def security_settings(
    admin: Dict[str, Any] = Depends(require_admin),
    services: TrustServices = Depends(get_services),
):
    """Effective limiter and upload settings."""
    settings = services.settings
    return {
        "success": True,
        "settings": {
            "rateLimitWindow": settings.rate_limit_window_ms,
            "rateLimitMax": settings.rate_limit_max_requests,
            "clientRateLimitMax": settings.client_rate_limit_max_requests,
            "blockDuration": settings.block_duration_ms,
            "rapidThreshold": settings.rapid_threshold,
            "rapidWindow": settings.rapid_window_ms,
            "failOpen": settings.rate_limit_fail_open,
            "loginRateLimit": LOGIN_RATE_LIMIT,
            "maxFileSize": settings.max_file_size_mb,
        },
    }


@router.post("/check-action")
async def check_action(
    body: ActionCheckRequest,
    request: Request,
    services: TrustServices = Depends(get_services),
):
    """
    Pre-flight check before a browser bulk action.

    Returns 200 with allowed true/false; a refused action is a normal
    answer, not an error.
    """
    signals = body.signals.model_dump() if body.signals is not None else None
    decision = services.gateway.check_action(
        action_type=body.action_type,
        ip=get_client_ip(request),
        honeypot=body.honeypot,
        humanness_score=body.humanness_score,
        signals=signals,
        challenge_id=body.challenge_id,
        challenge_answer=body.challenge_answer,
    )
    return {"success": True, **decision.to_dict()}

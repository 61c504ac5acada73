"""
Analytics endpoints: public event tracking plus admin views.
"""
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from doctools_server.auth import require_admin
from doctools_server.models import ImportAnalyticsRequest, TrackEventRequest
from doctools_server.rate_limiting import get_client_ip
from doctools_server.services import TrustServices, get_services

router = APIRouter(prefix="/api/analytics", tags=["analytics"])


@router.post("/track")
async def track_event(
    body: TrackEventRequest,
    request: Request,
    services: TrustServices = Depends(get_services),
):
    """Record one browser event. The visitor is X-Visitor-ID, else the client IP."""
    visitor_id = request.headers.get("x-visitor-id") or get_client_ip(request)
    await services.analytics.ingest(body.event, body.data, visitor_id=visitor_id)
    return {"success": True}


@router.get("")
async def get_analytics(
    admin: Dict[str, Any] = Depends(require_admin),
    services: TrustServices = Depends(get_services),
):
    snapshot = await services.analytics.snapshot()
    snapshot["requestStats"] = services.audit_log.stats().to_dict()
    return {"success": True, "analytics": snapshot}


@router.get("/export")
async def export_analytics(
    admin: Dict[str, Any] = Depends(require_admin),
    services: TrustServices = Depends(get_services),
):
    data = await services.analytics.export_all()
    filename = f"analytics_{services.analytics.today_key()}.json"
    return JSONResponse(
        content=data,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.post("/import")
async def import_analytics(
    body: ImportAnalyticsRequest,
    admin: Dict[str, Any] = Depends(require_admin),
    services: TrustServices = Depends(get_services),
):
    # AnalyticsImportError is answered with 400 by the app's error handlers
    await services.analytics.import_all(body.data)
    return {"success": True, "message": "Analytics data imported successfully"}


@router.delete("")
async def clear_analytics(
    admin: Dict[str, Any] = Depends(require_admin),
    services: TrustServices = Depends(get_services),
):
    await services.analytics.clear()
    return {"success": True, "message": "All analytics data cleared"}

"""
Admin session endpoints.

Login is throttled twice: the slowapi limit per client IP, and the account
lockout kept in the credential file.
"""
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from doctools_server.auth import require_admin
from doctools_server.models import ChangePasswordRequest, LoginRequest
from doctools_server.rate_limiting import LOGIN_RATE_LIMIT, get_client_ip, login_limiter
from doctools_server.services import TrustServices, get_services

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/login")
@login_limiter.limit(LOGIN_RATE_LIMIT)
def login(
    request: Request,
    body: LoginRequest,
    services: TrustServices = Depends(get_services),
):
    # Sync handler: bcrypt runs in the threadpool
    session = services.auth.login(body.password, client_ip=get_client_ip(request))
    return {"success": True, "message": "Login successful", **session}


@router.post("/logout")
async def logout(admin: Dict[str, Any] = Depends(require_admin)):
    # Tokens are stateless; the client drops its copy
    return {"success": True, "message": "Logged out successfully"}


@router.get("/verify")
async def verify(admin: Dict[str, Any] = Depends(require_admin)):
    return {
        "success": True,
        "admin": {"role": admin.get("role"), "loginTime": admin.get("loginTime")},
    }


@router.post("/change-password")
def change_password(
    body: ChangePasswordRequest,
    admin: Dict[str, Any] = Depends(require_admin),
    services: TrustServices = Depends(get_services),
):
    services.auth.change_password(body.current_password, body.new_password)
    return {"success": True, "message": "Password changed successfully"}


@router.get("/status")
def auth_status(services: TrustServices = Depends(get_services)):
    return {"success": True, "status": services.auth.status()}

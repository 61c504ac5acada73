"""
Pydantic models for request validation.

Security features:
- IP addresses restricted to dotted IPv4, ::1 and IPv4-mapped IPv6
- Block durations bounded (1 s .. 7 days)
- Event names and payloads size-limited
- Password fields length-checked
"""

import re
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

IPV4_PATTERN = re.compile(r"^(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})$")

MAX_BLOCK_DURATION_MS = 7 * 24 * 60 * 60 * 1000


def validate_ip_address(v: str) -> str:
    """
    Accept dotted IPv4 (octets 0-255), the IPv6 loopback, and IPv4-mapped
    IPv6 addresses (::ffff:...).
    """
    v = v.strip()
    if v == "::1" or v.startswith("::ffff:"):
        return v
    match = IPV4_PATTERN.match(v)
    if not match or any(int(octet) > 255 for octet in match.groups()):
        raise ValueError("Invalid IP address format")
    return v


class BlockIPRequest(BaseModel):
    """Manual block of one IP address."""

    ip: str = Field(..., min_length=1, max_length=64, description="IP address to block")
    duration: Optional[int] = Field(
        default=None,
        ge=1000,
        le=MAX_BLOCK_DURATION_MS,
        description="Block duration in milliseconds (default 300000)",
    )

    @field_validator("ip")
    @classmethod
    def check_ip(cls, v: str) -> str:
        return validate_ip_address(v)

    model_config = ConfigDict(
        json_schema_extra={"example": {"ip": "203.0.113.5", "duration": 600000}}
    )


class UnblockIPRequest(BaseModel):
    ip: str = Field(..., min_length=1, max_length=64)


class TrackEventRequest(BaseModel):
    """
    Analytics event from the browser.

    Unknown event names are accepted; the store ignores them.
    """

    event: str = Field(..., min_length=1, max_length=50)
    data: Optional[Dict[str, Any]] = Field(default=None)

    @field_validator("event")
    @classmethod
    def validate_event(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Event name required")
        return v

    model_config = ConfigDict(
        json_schema_extra={"example": {"event": "tool_use", "data": {"tool": "merge"}}}
    )


class ImportAnalyticsRequest(BaseModel):
    data: Optional[Dict[str, Any]] = None


class LoginRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=256)


class ChangePasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_password: str = Field(..., alias="currentPassword", min_length=1, max_length=256)
    new_password: str = Field(..., alias="newPassword", min_length=6, max_length=256)


class HumannessSignals(BaseModel):
    """Browser interaction signals used for the humanness score."""

    mouse_movement: bool = Field(default=False, alias="mouseMovement")
    keyboard_activity: bool = Field(default=False, alias="keyboardActivity")
    scroll_activity: bool = Field(default=False, alias="scrollActivity")
    touch_activity: bool = Field(default=False, alias="touchActivity")
    time_on_page: bool = Field(default=False, alias="timeOnPage")
    session_valid: bool = Field(default=False, alias="sessionValid")

    model_config = ConfigDict(populate_by_name=True)


class ActionCheckRequest(BaseModel):
    """
    Pre-flight check for a browser action.

    Either a precomputed humanness score or the raw signals may be sent;
    the score wins when both are present.
    """

    model_config = ConfigDict(populate_by_name=True)

    action_type: str = Field(..., alias="actionType", min_length=1, max_length=50)
    honeypot: Optional[str] = Field(default=None, max_length=500)
    humanness_score: Optional[int] = Field(default=None, alias="humannessScore", ge=0, le=100)
    signals: Optional[HumannessSignals] = None
    challenge_id: Optional[str] = Field(default=None, alias="challengeId", max_length=128)
    challenge_answer: Optional[int] = Field(default=None, alias="challengeAnswer")

"""
Admin authentication.

One admin account whose bcrypt hash lives in data/admin.json. A successful
login returns a signed, expiring session token (HS256); admin routes require
it as a Bearer token.

Security features:
- Account lockout after repeated failures
- A damaged credential file refuses logins instead of reseeding the default
- One generic message for missing, malformed and expired tokens
- Credential file written atomically
"""
import json
import math
import os
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from fastapi import Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from doctools_server.logging_config import get_logger, log_persistence_failure

logger = get_logger("auth")

ALGORITHM = "HS256"
GENERIC_AUTH_ERROR = "Invalid or missing session"

# Bearer scheme; a missing header is reported by require_admin, not FastAPI
bearer_scheme = HTTPBearer(auto_error=False)


class AuthError(Exception):
    """Authentication failed. Carries the HTTP status to answer with."""

    status_code = 401

    def __init__(self, message: str = GENERIC_AUTH_ERROR):
        super().__init__(message)
        self.message = message

    def to_response_body(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message}


class InvalidPasswordError(AuthError):
    def __init__(self, message: str = "Invalid password", attempts_remaining: Optional[int] = None):
        super().__init__(message)
        self.attempts_remaining = attempts_remaining

    def to_response_body(self) -> Dict[str, Any]:
        body = super().to_response_body()
        if self.attempts_remaining is not None:
            body["attemptsRemaining"] = self.attempts_remaining
        return body


class AccountLockedError(AuthError):
    status_code = 429


class CredentialUnavailableError(AuthError):
    """admin.json exists but holds no usable credential."""

    status_code = 503

    def __init__(self, message: str = "Admin credential unavailable"):
        super().__init__(message)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: datetime) -> str:
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class AdminAuthManager:
    """Manage the admin credential, lockout state and session tokens"""

    def __init__(
        self,
        credential_file: Path,
        secret_key: str,
        default_password: str = "admin123",
        session_ttl_seconds: int = 86400,
        max_attempts: int = 5,
        lockout_minutes: int = 15,
        bcrypt_rounds: int = 10,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize auth manager

        Args:
            credential_file: Path of admin.json
            secret_key: HMAC key for session tokens
            default_password: Password set when no credential file exists
            session_ttl_seconds: Session token lifetime
            max_attempts: Failed logins before the account locks
            lockout_minutes: Lock duration
            bcrypt_rounds: bcrypt cost factor
            clock: Callable returning an aware UTC datetime
        """
        self.credential_file = Path(credential_file)
        self.secret_key = secret_key
        self.default_password = default_password
        self.session_ttl_seconds = session_ttl_seconds
        self.max_attempts = max_attempts
        self.lockout_minutes = lockout_minutes
        self._clock = clock or _utcnow
        self._lock = threading.Lock()
        self.pwd_context = CryptContext(
            schemes=["bcrypt"],
            deprecated="auto",
            bcrypt__rounds=bcrypt_rounds,
        )

    def _default_record(self) -> Dict[str, Any]:
        return {
            "passwordHash": self.pwd_context.hash(self.default_password),
            "createdAt": _isoformat(self._clock()),
            "lastLogin": None,
            "lastLoginIP": None,
            "loginAttempts": 0,
            "lockedUntil": None,
        }

    def _load(self) -> Dict[str, Any]:
        """
        Read admin.json, seeding the default credential only when the file is
        missing. An existing file without a password hash is left untouched.

        Raises:
            CredentialUnavailableError: File is unreadable or has no hash
        """
        try:
            with open(self.credential_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            data = self._default_record()
            self._save(data)
            logger.info("admin_credential_initialized", path=str(self.credential_file))
            return data
        except (OSError, ValueError) as e:
            logger.error("admin_file_invalid", path=str(self.credential_file), error=str(e)[:200])
            raise CredentialUnavailableError()

        if not isinstance(data, dict) or not data.get("passwordHash"):
            logger.error("admin_file_invalid", path=str(self.credential_file), error="missing passwordHash")
            raise CredentialUnavailableError()
        return data

    def _save(self, data: Dict[str, Any]) -> None:
        tmp_path = self.credential_file.with_name(self.credential_file.name + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.credential_file)
        except OSError as e:
            log_persistence_failure("admin", str(self.credential_file), e)
            raise

    def ensure_initialized(self) -> bool:
        """Seed admin.json if missing. False when the existing file is unusable."""
        with self._lock:
            try:
                self._load()
            except CredentialUnavailableError:
                return False
        return True

    def _locked_until(self, data: Dict[str, Any]) -> Optional[datetime]:
        locked_until = _parse_datetime(data.get("lockedUntil"))
        if locked_until is not None and locked_until > self._clock():
            return locked_until
        return None

    def login(self, password: str, client_ip: Optional[str] = None) -> Dict[str, Any]:
        """
        Verify the admin password and issue a session token.

        Raises:
            AccountLockedError: Account is locked, or this failure locked it
            InvalidPasswordError: Wrong password, with attempts remaining
        """
        with self._lock:
            data = self._load()
            now = self._clock()

            locked_until = self._locked_until(data)
            if locked_until is not None:
                remaining_minutes = max(1, math.ceil((locked_until - now).total_seconds() / 60))
                raise AccountLockedError(f"Account locked. Try again in {remaining_minutes} minutes.")

            if data.get("lockedUntil"):
                # Lock served
                data["lockedUntil"] = None
                data["loginAttempts"] = 0

            if not self.pwd_context.verify(password, data["passwordHash"]):
                attempts = int(data.get("loginAttempts") or 0) + 1
                data["loginAttempts"] = attempts

                if attempts >= self.max_attempts:
                    data["lockedUntil"] = _isoformat(now + timedelta(minutes=self.lockout_minutes))
                    self._save(data)
                    logger.warning("admin_account_locked", client_ip=client_ip, attempts=attempts)
                    raise AccountLockedError(
                        f"Too many failed attempts. Account locked for {self.lockout_minutes} minutes."
                    )

                self._save(data)
                logger.warning("admin_login_failed", client_ip=client_ip, attempts=attempts)
                raise InvalidPasswordError(attempts_remaining=self.max_attempts - attempts)

            data["loginAttempts"] = 0
            data["lastLogin"] = _isoformat(now)
            data["lastLoginIP"] = client_ip
            self._save(data)

        logger.info("admin_login", client_ip=client_ip)
        return {"token": self.create_token(), "expiresIn": self.session_ttl_seconds}

    def create_token(self) -> str:
        now = self._clock()
        payload = {
            "role": "admin",
            "loginTime": int(time.time() * 1000),
            "exp": now + timedelta(seconds=self.session_ttl_seconds),
        }
        return jwt.encode(payload, self.secret_key, algorithm=ALGORITHM)

    def verify_token(self, token: str) -> Dict[str, Any]:
        """Decode a session token. Any failure is the same AuthError."""
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[ALGORITHM])
        except JWTError:
            raise AuthError()
        if payload.get("role") != "admin":
            raise AuthError()
        return payload

    def change_password(self, current_password: str, new_password: str) -> None:
        with self._lock:
            data = self._load()
            if not self.pwd_context.verify(current_password, data["passwordHash"]):
                raise InvalidPasswordError("Current password is incorrect")
            data["passwordHash"] = self.pwd_context.hash(new_password)
            data["passwordChangedAt"] = _isoformat(self._clock())
            self._save(data)
        logger.info("admin_password_changed")

    def status(self) -> Dict[str, Any]:
        with self._lock:
            data = self._load()
            return {
                "lastLogin": data.get("lastLogin"),
                "loginAttempts": int(data.get("loginAttempts") or 0),
                "isLocked": self._locked_until(data) is not None,
            }


async def require_admin(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> Dict[str, Any]:
    """
    FastAPI dependency guarding admin routes

    Usage:
        @router.get("/endpoint")
        async def endpoint(admin: dict = Depends(require_admin)):
            ...
    """
    if credentials is None or not credentials.credentials:
        raise AuthError()
    return request.app.state.services.auth.verify_token(credentials.credentials)

"""
Request provenance helpers: security event log, session tracking and CSRF checks.

All state lives in Supabase (tables plus database functions); these classes
are thin wrappers that never raise on a storage failure. They log it and
return the safe answer instead.
"""
import os
import re
import uuid
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from fastapi import Request
from supabase import Client

logger = logging.getLogger(__name__)

EVENT_TYPES = {
    "auth_login_success",
    "auth_login_failed",
    "auth_logout",
    "validation_error",
    "rate_limit_exceeded",
    "suspicious_activity",
    "unauthorized_access",
    "token_expired",
    "session_created",
    "session_terminated",
    "csrf_validation_failed",
    "input_validation_failed",
}
SEVERITIES = ("low", "medium", "high", "critical")

DEFAULT_PORTS = {"http": 80, "https": 443}


def extract_ip_address(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("x-real-ip")


def normalize_origin(value: str) -> Optional[str]:
    """scheme://host[:port] in lower case, default ports dropped"""
    parsed = urlparse(value.strip())
    if not parsed.scheme or not parsed.hostname:
        return None
    scheme = parsed.scheme.lower()
    try:
        port = parsed.port
    except ValueError:
        return None
    origin = f"{scheme}://{parsed.hostname.lower()}"
    if port and port != DEFAULT_PORTS.get(scheme):
        origin += f":{port}"
    return origin


def default_allowed_origins() -> List[str]:
    origins = [os.environ.get("SUPABASE_URL"), os.environ.get("ALLOWED_ORIGIN")]
    return [o for o in origins if o]


def _request_origin(request: Request) -> Dict[str, Any]:
    origin = request.headers.get("origin")
    referer = request.headers.get("referer")
    if not origin and not referer:
        return {"valid": False, "error": "Missing origin and referer headers"}

    request_origin = normalize_origin(origin) if origin else normalize_origin(referer)
    if not request_origin:
        return {"valid": False, "error": "Could not determine request origin"}
    return {"valid": True, "origin": request_origin}


def _origin_allowed(request: Request, allowed_origins: List[str]) -> Dict[str, Any]:
    found = _request_origin(request)
    if not found["valid"]:
        return found
    allowed = {normalize_origin(o) or o.lower() for o in allowed_origins}
    if found["origin"] not in allowed:
        return {"valid": False, "origin": found["origin"], "error": f"Origin not allowed: {found['origin']}"}
    return found


def validate_origin_simple(request: Request, allowed_origins: Optional[List[str]] = None) -> Dict[str, Any]:
    """Origin/Referer check for endpoints that do not need CSRF tokens"""
    return _origin_allowed(request, allowed_origins if allowed_origins is not None else default_allowed_origins())


class SecurityLogger:
    """Writes security events through the `log_security_event` database function"""

    def __init__(self, db: Client):
        self.db = db

    def log_event(self,
                  event_type: str,
                  severity: str,
                  edge_function: str,
                  user_id: Optional[str] = None,
                  ip_address: Optional[str] = None,
                  user_agent: Optional[str] = None,
                  event_data: Optional[Dict[str, Any]] = None) -> bool:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown security event type: {event_type}")
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown severity: {severity}")

        try:
            self.db.rpc("log_security_event", {
                "p_user_id": user_id,
                "p_event_type": event_type,
                "p_severity": severity,
                "p_ip_address": ip_address,
                "p_user_agent": user_agent,
                "p_edge_function": edge_function,
                "p_event_data": event_data or {},
            }).execute()
        except Exception as e:
            logger.error(f"Failed to log security event {event_type}: {e}", extra={"user_id": user_id})
            return False

        if severity in ("high", "critical"):
            logger.warning(f"Security event: {event_type}", extra={"user_id": user_id, "edge_function": edge_function})
        return True

    def log_for_request(self, request: Request, event_type: str, severity: str, edge_function: str,
                        user_id: Optional[str], event_data: Dict[str, Any]) -> bool:
        return self.log_event(
            event_type=event_type,
            severity=severity,
            edge_function=edge_function,
            user_id=user_id,
            ip_address=extract_ip_address(request),
            user_agent=request.headers.get("user-agent"),
            event_data=event_data,
        )

    def log_validation_error(self, edge_function: str, error: str, request: Request, user_id: str = None) -> bool:
        return self.log_for_request(request, "input_validation_failed", "medium", edge_function, user_id, {
            "error": error,
            "url": str(request.url),
            "method": request.method,
        })

    def log_suspicious_activity(self, edge_function: str, reason: str, request: Request, user_id: str = None) -> bool:
        return self.log_for_request(request, "suspicious_activity", "high", edge_function, user_id, {
            "reason": reason,
            "url": str(request.url),
        })

    def log_rate_limit_exceeded(self, edge_function: str, request: Request, user_id: str = None) -> bool:
        return self.log_for_request(request, "rate_limit_exceeded", "medium", edge_function, user_id, {
            "url": str(request.url),
        })

    def log_unauthorized_access(self, edge_function: str, request: Request, user_id: str = None) -> bool:
        return self.log_for_request(request, "unauthorized_access", "high", edge_function, user_id, {
            "url": str(request.url),
        })


class SessionManager:
    """Tracks concurrent logins per user in `session_tracking`"""

    def __init__(self, db: Client, max_concurrent_sessions: int = 5, session_expiry_hours: int = 24):
        self.db = db
        self.max_concurrent_sessions = max_concurrent_sessions
        self.session_expiry_hours = session_expiry_hours

    def create_session(self, user_id: str, request: Request) -> Dict[str, Any]:
        active = self.get_active_session_count(user_id)
        if active >= self.max_concurrent_sessions:
            logger.warning(
                "Max concurrent sessions reached",
                extra={"user_id": user_id, "active_sessions": active},
            )
            return {
                "success": False,
                "error": f"Maximum concurrent sessions ({self.max_concurrent_sessions}) reached. "
                         "Please log out from another device.",
            }

        session_token = str(uuid.uuid4())
        expires_at = datetime.now(timezone.utc) + timedelta(hours=self.session_expiry_hours)
        try:
            self.db.table("session_tracking").insert({
                "user_id": user_id,
                "session_token": session_token,
                "ip_address": extract_ip_address(request),
                "user_agent": request.headers.get("user-agent"),
                "expires_at": expires_at.isoformat(),
            }).execute()
        except Exception as e:
            logger.error(f"Failed to create session: {e}", extra={"user_id": user_id})
            return {"success": False, "error": "Failed to create session"}

        logger.info("Session created", extra={"user_id": user_id})
        return {"success": True, "session_token": session_token, "expires_at": expires_at}

    def validate_session(self, session_token: str) -> Dict[str, Any]:
        try:
            result = self.db.table("session_tracking").select("user_id, expires_at") \
                .eq("session_token", session_token).maybe_single().execute()
        except Exception as e:
            logger.error(f"Failed to validate session: {e}")
            return {"valid": False}

        row = result.data if result is not None else None
        if not row:
            return {"valid": False}

        expires_at = _parse_timestamp(row["expires_at"])
        if expires_at < datetime.now(timezone.utc):
            self.terminate_session(session_token)
            return {"valid": False}

        self._touch(session_token)
        return {"valid": True, "user_id": row["user_id"]}

    def _touch(self, session_token: str):
        try:
            self.db.rpc("update_session_activity", {"p_session_token": session_token}).execute()
        except Exception as e:
            logger.error(f"Failed to update session activity: {e}")

    def terminate_session(self, session_token: str) -> bool:
        try:
            self.db.table("session_tracking").delete().eq("session_token", session_token).execute()
            return True
        except Exception as e:
            logger.error(f"Failed to terminate session: {e}")
            return False

    def terminate_all_user_sessions(self, user_id: str) -> bool:
        try:
            self.db.table("session_tracking").delete().eq("user_id", user_id).execute()
            logger.info("All sessions terminated", extra={"user_id": user_id})
            return True
        except Exception as e:
            logger.error(f"Failed to terminate user sessions: {e}", extra={"user_id": user_id})
            return False

    def get_active_session_count(self, user_id: str) -> int:
        try:
            data = self.db.rpc("get_active_session_count", {"p_user_id": user_id}).execute().data
            return int(data or 0)
        except Exception as e:
            logger.error(f"Failed to get session count: {e}", extra={"user_id": user_id})
            return 0

    def get_user_sessions(self, user_id: str) -> List[Dict[str, Any]]:
        try:
            result = self.db.table("session_tracking") \
                .select("session_token, ip_address, user_agent, created_at, last_activity_at, expires_at") \
                .eq("user_id", user_id) \
                .gt("expires_at", datetime.now(timezone.utc).isoformat()) \
                .order("created_at", desc=True) \
                .execute()
            return result.data or []
        except Exception as e:
            logger.error(f"Failed to list sessions: {e}", extra={"user_id": user_id})
            return []

    def cleanup_expired_sessions(self) -> int:
        try:
            return int(self.db.rpc("cleanup_expired_sessions", {}).execute().data or 0)
        except Exception as e:
            logger.error(f"Failed to clean up sessions: {e}")
            return 0


class CSRFProtection:
    """Per-user CSRF tokens plus Origin/Referer matching"""

    def __init__(self,
                 db: Client,
                 allowed_origins: Optional[List[str]] = None,
                 token_validity_minutes: int = 60,
                 require_origin_match: bool = True):
        self.db = db
        self.allowed_origins = allowed_origins if allowed_origins is not None else default_allowed_origins()
        self.token_validity_minutes = token_validity_minutes
        self.require_origin_match = require_origin_match
        self.security_logger = SecurityLogger(db)

    def generate_token(self, user_id: str) -> Optional[str]:
        try:
            return self.db.rpc("generate_csrf_token", {
                "p_user_id": user_id,
                "p_validity_minutes": self.token_validity_minutes,
            }).execute().data
        except Exception as e:
            logger.error(f"Failed to generate CSRF token: {e}", extra={"user_id": user_id})
            return None

    def validate_token(self, user_id: str, token: str) -> bool:
        try:
            return bool(self.db.rpc("validate_csrf_token", {
                "p_user_id": user_id,
                "p_token": token,
            }).execute().data)
        except Exception as e:
            logger.error(f"Failed to validate CSRF token: {e}", extra={"user_id": user_id})
            return False

    def validate_origin(self, request: Request) -> Dict[str, Any]:
        return _origin_allowed(request, self.allowed_origins)

    def validate_request(self, user_id: str, token: Optional[str], request: Request,
                         edge_function: str) -> Dict[str, Any]:
        token_valid = False
        if token:
            token_valid = self.validate_token(user_id, token)
            if not token_valid:
                self.security_logger.log_for_request(
                    request, "csrf_validation_failed", "high", edge_function, user_id,
                    {"reason": "Invalid or expired CSRF token"},
                )
                return {"valid": False, "token_validated": False, "error": "Invalid or expired CSRF token"}

        origin_valid = False
        if self.require_origin_match:
            check = self.validate_origin(request)
            origin_valid = check["valid"]
            if not origin_valid:
                self.security_logger.log_for_request(
                    request, "csrf_validation_failed", "high", edge_function, user_id,
                    {"reason": "Origin validation failed", "origin": check.get("origin"), "error": check.get("error")},
                )
                return {
                    "valid": False,
                    "token_validated": token_valid,
                    "origin_validated": False,
                    "error": check.get("error"),
                }

        return {
            "valid": True,
            "token_validated": token_valid,
            "origin_validated": origin_valid or not self.require_origin_match,
        }

    def cleanup_expired_tokens(self) -> int:
        try:
            return int(self.db.rpc("cleanup_expired_csrf_tokens", {}).execute().data or 0)
        except Exception as e:
            logger.error(f"Failed to clean up CSRF tokens: {e}")
            return 0

    def get_active_token_count(self, user_id: str) -> int:
        try:
            return int(self.db.rpc("get_csrf_token_count", {"p_user_id": user_id}).execute().data or 0)
        except Exception as e:
            logger.error(f"Failed to count CSRF tokens: {e}", extra={"user_id": user_id})
            return 0


FRACTION_PATTERN = re.compile(r"\.(\d+)")


def _parse_timestamp(value: str) -> datetime:
    # PostgREST drops trailing zeros from the microseconds
    text = FRACTION_PATTERN.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value.replace("Z", "+00:00"), count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed

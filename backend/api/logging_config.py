import logging
import sys
import os
from typing import Dict, Any, Optional
import traceback
from datetime import datetime
import json

from fastapi import HTTPException

# Extras copied onto every JSON log line when present on the record
STRUCTURED_FIELDS = (
    "user_id",
    "request_id",
    "endpoint",
    "edge_function",
    "operation_type",
    "openai_model",
    "tokens_consumed",
    "balance_after",
    "cost_usd",
    "margin_multiplier",
    "margin_percentage",
    "profit_usd",
    "status_code",
    "error_code",
)


class StructuredFormatter(logging.Formatter):
    """Custom formatter for structured JSON logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in STRUCTURED_FIELDS:
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)
        if hasattr(record, 'execution_time'):
            log_entry['execution_time_ms'] = record.execution_time

        if record.exc_info and record.exc_info[0] is not None:
            log_entry['exception'] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info)
            }

        return json.dumps(log_entry, default=str)


def setup_logging():
    """Configure application logging"""
    log_level = os.environ.get("LOG_LEVEL", "INFO").upper()

    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(StructuredFormatter())
    logger.addHandler(console_handler)

    # Silence some noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("hpack").setLevel(logging.WARNING)

    return logger


# Application error classes
class AppError(Exception):
    """Base application error"""
    status_code = 500

    def __init__(self, message: str, error_code: str = None, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code or "GENERAL_ERROR"
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(AppError):
    """Input validation error"""
    status_code = 422

    def __init__(self, message: str, field: str = None, details: Dict[str, Any] = None):
        super().__init__(message, "VALIDATION_ERROR", details)
        self.field = field


class AuthenticationError(AppError):
    """Authentication error"""
    status_code = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, "AUTH_ERROR")


class AuthorizationError(AppError):
    """Authorization error"""
    status_code = 403

    def __init__(self, message: str = "Access denied"):
        super().__init__(message, "AUTHZ_ERROR")


class NotFoundError(AppError):
    """Requested row does not exist"""
    status_code = 404

    def __init__(self, resource: str, message: str = None):
        super().__init__(message or f"{resource} not found", "NOT_FOUND", {"resource": resource})


class ExternalServiceError(AppError):
    """External service error (OpenAI, Supabase, etc.)"""
    status_code = 502

    def __init__(self, service: str, message: str, status_code: int = None):
        super().__init__(f"{service} error: {message}", "EXTERNAL_SERVICE_ERROR", {
            "service": service,
            "status_code": status_code
        })


class DatabaseError(AppError):
    """Database operation error"""
    status_code = 500

    def __init__(self, operation: str, message: str):
        super().__init__(f"Database {operation} failed: {message}", "DATABASE_ERROR", {
            "operation": operation
        })


class InsufficientTokensError(AppError):
    """Caller cannot pay for the requested AI operation"""
    status_code = 402

    def __init__(self, current_balance: int, required_tokens: int, needs_upgrade: bool):
        if needs_upgrade:
            message = "You need a subscription to continue using AI features."
        else:
            message = "You have run out of tokens. Please purchase more tokens or upgrade your subscription."
        super().__init__(message, "INSUFFICIENT_TOKENS", {
            "currentBalance": current_balance,
            "requiredTokens": required_tokens,
            "needsUpgrade": needs_upgrade,
            "message": message,
        })
        self.current_balance = current_balance
        self.required_tokens = required_tokens
        self.needs_upgrade = needs_upgrade


class RateLimitError(AppError):
    """Too many requests for this user"""
    status_code = 429

    def __init__(self, message: str = "Too many requests", retry_after: int = 5):
        super().__init__(message, "RATE_LIMIT_EXCEEDED", {"retry_after": retry_after})
        self.retry_after = retry_after


def to_http_exception(error: AppError) -> HTTPException:
    """Translate an application error into the JSON error shape clients expect"""
    if isinstance(error, InsufficientTokensError):
        return HTTPException(
            status_code=error.status_code,
            detail={
                "error": "Insufficient tokens",
                "code": error.error_code,
                "details": error.details,
            },
        )

    detail = {"error": error.error_code, "message": error.message}
    if isinstance(error, ValidationError) and error.field:
        detail["field"] = error.field

    headers = None
    if isinstance(error, RateLimitError):
        detail["retry_after"] = error.retry_after
        headers = {"Retry-After": str(error.retry_after)}

    return HTTPException(status_code=error.status_code, detail=detail, headers=headers)


# Error reporting utilities
def log_error(logger: logging.Logger, error: Exception, context: Dict[str, Any] = None):
    """Log an error with context"""
    context = context or {}

    if isinstance(error, AppError):
        logger.error(
            f"Application error: {error.message}",
            extra={
                "error_code": error.error_code,
                "error_details": error.details,
                **context
            },
            exc_info=True
        )
    else:
        logger.error(
            f"Unexpected error: {str(error)}",
            extra=context,
            exc_info=True
        )


def log_api_call(logger: logging.Logger,
                 endpoint: str,
                 user_id: str = None,
                 execution_time: float = None,
                 status_code: int = None,
                 request_id: Optional[str] = None):
    """Log API call metrics"""
    logger.info(
        f"API call completed: {endpoint}",
        extra={
            "endpoint": endpoint,
            "user_id": user_id,
            "execution_time": execution_time,
            "status_code": status_code,
            "request_id": request_id,
        }
    )

"""
Global Error Handling for Soulforge
Exception taxonomy and structured responses for the payment core

Features:
- Custom exception classes (config, key custody, chain, counter store)
- Structured JSON error responses
- Retry logic for infrastructure start-up
- Error tracking and aggregation
"""

import asyncio
import logging
import traceback
from datetime import datetime
from typing import Any, Callable, Dict, Optional, TypeVar
from functools import wraps
from enum import Enum

from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse

logger = logging.getLogger("ErrorHandler")


# ============================================
# ERROR CODES
# ============================================

class ErrorCode(str, Enum):
    # Client errors (4xx)
    BAD_REQUEST = "BAD_REQUEST"
    PAYMENT_REQUIRED = "PAYMENT_REQUIRED"
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Server errors (5xx)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    CONFIG_ERROR = "CONFIG_ERROR"
    COUNTER_STORE_ERROR = "COUNTER_STORE_ERROR"
    EXTERNAL_API_ERROR = "EXTERNAL_API_ERROR"
    BLOCKCHAIN_ERROR = "BLOCKCHAIN_ERROR"

    # Business logic errors
    KEY_NOT_FOUND = "KEY_NOT_FOUND"
    DECRYPTION_FAILED = "DECRYPTION_FAILED"
    PAID_BUT_UNDELIVERED = "PAID_BUT_UNDELIVERED"


# ============================================
# CUSTOM EXCEPTIONS
# ============================================

class SoulforgeError(Exception):
    """Base exception for Soulforge"""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: Dict = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict:
        return {
            "success": False,
            "error": {
                "code": self.code.value,
                "message": self.message,
                "details": self.details,
                "timestamp": self.timestamp.isoformat()
            }
        }


class ValidationError(SoulforgeError):
    """Input validation error"""
    def __init__(self, message: str, details: Dict = None):
        super().__init__(message, ErrorCode.VALIDATION_ERROR, 400, details)


class PaymentRequiredError(SoulforgeError):
    """x402 challenge, serialized as the bare 402 body clients parse"""
    def __init__(self, requirements: Dict, message: str = "Payment Required", reason: str = None,
                 hints: Dict = None):
        super().__init__(message, ErrorCode.PAYMENT_REQUIRED, 402, {"paymentRequirements": requirements})
        self.requirements = requirements
        self.reason = reason
        self.hints = hints or {}

    @classmethod
    def from_body(cls, body: Dict) -> "PaymentRequiredError":
        """Rebuild from a 402 body (error, details?, paymentRequirements, extra hints)"""
        hints = {k: v for k, v in body.items() if k not in ("error", "details", "paymentRequirements")}
        return cls(body.get("paymentRequirements") or {}, body.get("error", "Payment Required"),
                   body.get("details"), hints)

    def to_dict(self) -> Dict:
        body = {"error": self.message}
        if self.reason:
            body["details"] = self.reason
        body["paymentRequirements"] = self.requirements
        body.update(self.hints)
        return body


class ConfigMissingError(SoulforgeError):
    """Required configuration absent or invalid - not retried"""
    def __init__(self, setting: str, message: str = None):
        super().__init__(
            message or f"{setting} not configured",
            ErrorCode.CONFIG_ERROR,
            500,
            {"setting": setting}
        )


class KeyNotFoundError(SoulforgeError):
    """No agent wallet / key for a module"""
    def __init__(self, module_id: str):
        super().__init__(
            f"No agent wallet found for module {module_id}",
            ErrorCode.KEY_NOT_FOUND,
            404,
            {"module_id": module_id}
        )


class DecryptionFailedError(SoulforgeError):
    """Wrong master key or corrupted key blob"""
    def __init__(self, message: str = "Failed to decrypt private key"):
        super().__init__(message, ErrorCode.DECRYPTION_FAILED, 500)


class ExternalAPIError(SoulforgeError):
    """External API call failed"""
    def __init__(self, api_name: str, status_code: int = None, message: str = None):
        details = {"api": api_name}
        if status_code:
            details["api_status_code"] = status_code
        super().__init__(
            message or f"External API '{api_name}' failed",
            ErrorCode.EXTERNAL_API_ERROR,
            502,
            details
        )


class BlockchainError(SoulforgeError):
    """Blockchain RPC operation failed"""
    def __init__(self, chain: str, message: str, tx_hash: str = None):
        details = {"chain": chain}
        if tx_hash:
            details["tx_hash"] = tx_hash
        super().__init__(message, ErrorCode.BLOCKCHAIN_ERROR, 500, details)


class CounterStoreError(SoulforgeError):
    """Counter/quota store unavailable"""
    def __init__(self, operation: str, original_error: Exception = None):
        details = {"operation": operation}
        if original_error:
            details["original_error"] = str(original_error)
        super().__init__(
            f"Counter store operation '{operation}' failed",
            ErrorCode.COUNTER_STORE_ERROR,
            503,
            details
        )


class SettledButUndeliveredError(SoulforgeError):
    """Payment settled but the reply could not be generated. Never re-settle."""
    def __init__(self, tx_hash: Optional[str], reason: str = None):
        super().__init__(
            "Failed to generate response",
            ErrorCode.PAID_BUT_UNDELIVERED,
            500,
            {
                "payment": {
                    "txHash": tx_hash,
                    "status": "settled",
                    "note": "Payment was processed. Please contact support if issue persists.",
                },
                "reason": reason,
            }
        )


# ============================================
# ERROR TRACKING
# ============================================

class ErrorTracker:
    """Tracks and aggregates errors for monitoring"""

    def __init__(self, max_errors: int = 1000):
        self.errors: list = []
        self.max_errors = max_errors
        self.error_counts: Dict[str, int] = {}

    def track(self, error: Exception, request_path: str = None):
        """Track an error"""
        error_type = type(error).__name__
        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

        error_info = {
            "type": error_type,
            "message": str(error),
            "path": request_path,
            "timestamp": datetime.now().isoformat(),
            "traceback": traceback.format_exc() if not isinstance(error, SoulforgeError) else None
        }

        if isinstance(error, SoulforgeError):
            error_info["code"] = error.code.value
            error_info["details"] = error.details

        self.errors.append(error_info)
        if len(self.errors) > self.max_errors:
            self.errors = self.errors[-self.max_errors:]

        if not isinstance(error, SoulforgeError) or error.status_code >= 500:
            logger.error(f"Error tracked: {error_type} - {str(error)[:200]}")

    def get_stats(self) -> Dict:
        """Get error statistics"""
        return {
            "total_errors": len(self.errors),
            "error_counts": self.error_counts,
            "recent_errors": self.errors[-10:],
            "timestamp": datetime.now().isoformat()
        }

    def clear(self):
        """Clear error history"""
        self.errors.clear()
        self.error_counts.clear()


error_tracker = ErrorTracker()


# ============================================
# RETRY LOGIC
# ============================================

T = TypeVar('T')


def retry(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple = (Exception,)
):
    """
    Decorator for automatic retry with exponential backoff.

    Only for idempotent calls. Settlement must never be wrapped in this.

    Usage:
        @retry(max_attempts=3, delay=1.0)
        async def connect():
            ...
    """
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            last_exception = None
            current_delay = delay

            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e

                    if attempt < max_attempts - 1:
                        logger.warning(f"Retry {attempt + 1}/{max_attempts} for {func.__name__}: {e}")
                        await asyncio.sleep(current_delay)
                        current_delay *= backoff
                    else:
                        logger.error(f"All retries failed for {func.__name__}: {e}")

            raise last_exception

        return wrapper
    return decorator


# ============================================
# FASTAPI EXCEPTION HANDLERS
# ============================================

async def soulforge_exception_handler(request: Request, exc: SoulforgeError) -> JSONResponse:
    """Handle SoulforgeError exceptions"""
    error_tracker.track(exc, str(request.url.path))

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict()
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTPExceptions"""
    error_tracker.track(exc, str(request.url.path))

    # 402 bodies carry payment requirements and must reach the client unchanged
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content=exc.detail)

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": {
                "code": ErrorCode.BAD_REQUEST.value if exc.status_code < 500 else ErrorCode.INTERNAL_ERROR.value,
                "message": exc.detail,
                "timestamp": datetime.now().isoformat()
            }
        }
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions"""
    error_tracker.track(exc, str(request.url.path))
    logger.error(f"Unhandled exception: {traceback.format_exc()}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected error occurred",
                "timestamp": datetime.now().isoformat()
            }
        }
    )


def register_exception_handlers(app):
    """Register all exception handlers with FastAPI app"""
    app.add_exception_handler(SoulforgeError, soulforge_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    logger.info("Exception handlers registered")

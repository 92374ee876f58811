"""
Centralized error handling and sanitization.

Provides:
- Standard error codes and the AppError base
- Domain errors raised by the lifecycle services
- Error sanitization for production environments
"""

import logging
from enum import Enum
from typing import Any, Optional

from fastapi import HTTPException, status

from .config import get_settings

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Standard error codes for the application"""

    # Authentication
    AUTH_INVALID_TOKEN = "AUTH_INVALID_TOKEN"
    AUTH_RATE_LIMITED = "AUTH_RATE_LIMITED"
    CRON_UNAUTHORIZED = "CRON_UNAUTHORIZED"

    # Authorization
    AUTHZ_FORBIDDEN = "AUTHZ_FORBIDDEN"
    AUTHZ_RESOURCE_NOT_FOUND = "AUTHZ_RESOURCE_NOT_FOUND"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_STATE = "INVALID_STATE"
    DUPLICATE_TRANSACTION = "DUPLICATE_TRANSACTION"

    # Insufficient resources
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    BELOW_MINIMUM_SIZE = "BELOW_MINIMUM_SIZE"

    # External services
    EXCHANGE_ERROR = "EXCHANGE_ERROR"
    AI_SERVICE_ERROR = "AI_SERVICE_ERROR"
    CHAIN_ERROR = "CHAIN_ERROR"
    PAYOUT_PENDING = "PAYOUT_PENDING"
    PAYOUT_FAILED = "PAYOUT_FAILED"
    REDIS_UNAVAILABLE = "REDIS_UNAVAILABLE"

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


class AppError(Exception):
    """
    Base application error with structured information.

    Supports automatic sanitization for production environments.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
        internal_message: Optional[str] = None,
    ):
        """
        Create an application error.

        Args:
            code: Error code enum for machine-readable identification
            message: User-friendly error message (safe to expose)
            status_code: HTTP status code
            details: Additional details (sanitized in production)
            internal_message: Detailed message for logging only (never exposed)
        """
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.internal_message = internal_message
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code.value,
                "message": self.message,
                "details": self.details,
            }
        }


# ==================== Domain Errors ====================


class AgentNotFoundError(AppError):
    def __init__(self, agent_id: Any):
        super().__init__(
            ErrorCode.AUTHZ_RESOURCE_NOT_FOUND,
            "Agent not found",
            status.HTTP_404_NOT_FOUND,
            {"agent_id": str(agent_id)},
        )


class TradeNotFoundError(AppError):
    def __init__(self, trade_id: Any):
        super().__init__(
            ErrorCode.AUTHZ_RESOURCE_NOT_FOUND,
            "Trade not found",
            status.HTTP_404_NOT_FOUND,
            {"trade_id": str(trade_id)},
        )


class InvalidStateTransitionError(AppError):
    """Raised when a status machine rejects a transition."""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            ErrorCode.INVALID_STATE,
            f"Cannot move {entity} from '{current}' to '{target}'",
            status.HTTP_409_CONFLICT,
            {"entity": entity, "current": current, "target": target},
        )


class InsufficientBalanceError(AppError):
    def __init__(self, required: float, available: float, what: str = "balance"):
        self.required = required
        self.available = available
        super().__init__(
            ErrorCode.INSUFFICIENT_BALANCE,
            f"Insufficient {what}: need {required:.2f}, have {available:.2f}",
            status.HTTP_400_BAD_REQUEST,
            {"required": required, "available": available},
        )


class BelowMinimumSizeError(AppError):
    def __init__(self, amount: float, minimum: float):
        super().__init__(
            ErrorCode.BELOW_MINIMUM_SIZE,
            f"Amount ${amount:.2f} is below the minimum ${minimum:.2f}",
            status.HTTP_400_BAD_REQUEST,
            {"amount": amount, "minimum": minimum},
        )


class DuplicateTransactionError(AppError):
    """An external tx hash has already been settled once."""

    def __init__(self, tx_hash: str):
        super().__init__(
            ErrorCode.DUPLICATE_TRANSACTION,
            "Transaction hash already processed",
            status.HTTP_409_CONFLICT,
            {"tx_hash": tx_hash},
        )


class PayoutPendingError(AppError):
    """Funds are still in motion; the caller may stop waiting but nothing is rolled back."""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(
            ErrorCode.PAYOUT_PENDING,
            message,
            status.HTTP_202_ACCEPTED,
            {"stage": stage},
        )


class PayoutFailedError(AppError):
    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(
            ErrorCode.PAYOUT_FAILED,
            message,
            status.HTTP_502_BAD_GATEWAY,
            {"stage": stage},
        )


def sanitize_error_message(
    error: Exception,
    user_message: str = "An unexpected error occurred",
    include_type: bool = False,
) -> str:
    """
    Sanitize an error message for client response.

    In production: Returns generic user message
    In development: Returns detailed error information
    """
    settings = get_settings()

    if settings.environment == "production":
        return user_message

    error_str = str(error)
    if include_type:
        return f"{type(error).__name__}: {error_str}"
    return error_str


def create_http_exception(
    code: ErrorCode,
    user_message: str,
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
    internal_error: Optional[Exception] = None,
    log_error: bool = True,
) -> HTTPException:
    """
    Create an HTTPException with sanitized message.

    Args:
        code: Error code for identification
        user_message: User-friendly message (shown in production)
        status_code: HTTP status code
        internal_error: Optional internal exception for logging
        log_error: Whether to log the error
    """
    settings = get_settings()

    if log_error and internal_error:
        logger.error(
            f"[{code.value}] {user_message}: {internal_error}",
            exc_info=True,
        )
    elif log_error:
        logger.error(f"[{code.value}] {user_message}")

    if settings.environment == "production" or not internal_error:
        detail = user_message
    else:
        detail = f"{user_message}: {internal_error}"

    return HTTPException(
        status_code=status_code,
        detail=detail,
    )

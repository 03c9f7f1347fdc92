"""
Custom Exception Hierarchy

Structured exceptions shared by the order, payment and webhook layers.
Every error renders to the same envelope through ``to_dict()``.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"
    PERSISTENCE_ERROR = "ERR_1007"

    # Order errors (2xxx)
    ORDER_NOT_FOUND = "ERR_2001"
    INVALID_PHONE = "ERR_2002"
    DELIVERY_LOCATION_REQUIRED = "ERR_2003"
    DELIVERY_OUT_OF_RANGE = "ERR_2004"
    MINIMUM_ORDER_VALUE = "ERR_2005"
    STORE_BUSY = "ERR_2006"
    PAYMENT_METHOD_NOT_ALLOWED = "ERR_2007"

    # Payment errors (4xxx)
    MALFORMED_PAYLOAD = "ERR_4004"

    # External service errors (5xxx)
    MPESA_ERROR = "ERR_5001"
    WHATSAPP_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"

    # State machine errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"
    TRANSITION_NOT_PERMITTED = "ERR_6002"

    # Idempotency errors (7xxx)
    IDEMPOTENCY_IN_PROGRESS = "ERR_7001"
    IDEMPOTENCY_KEY_REUSED = "ERR_7002"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class OrderNotFoundError(NotFoundException):
    def __init__(self, identifier: Any):
        super().__init__("Order", identifier, error_code=ErrorCode.ORDER_NOT_FOUND)
        self.message = "Order not found"


class WebhookAuthenticationError(AppException):
    """Shared secret or HMAC signature did not match"""

    def __init__(self, reason: str):
        super().__init__(
            message=reason,
            error_code=ErrorCode.UNAUTHORIZED,
            status_code=401,
            details={"reason": reason}
        )


class RateLimitedError(AppException):
    """Caller exceeded a rate-limit window"""

    def __init__(self, message: str, retry_after_ms: int):
        super().__init__(
            message=message,
            error_code=ErrorCode.RATE_LIMITED,
            status_code=429,
            details={"retry_after_ms": retry_after_ms}
        )
        self.retry_after_ms = retry_after_ms


class BusyModeError(AppException):
    """Store is not accepting orders right now"""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            error_code=ErrorCode.STORE_BUSY,
            status_code=503,
        )


class PersistenceError(AppException):
    """Datastore write failed; nothing was committed"""

    def __init__(self, message: str = "Database error. Please try again.", details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.PERSISTENCE_ERROR,
            status_code=500,
            details=details
        )


class IdempotencyInProgressError(AppException):
    """Another request with the same idempotency key is still running"""

    def __init__(self, scope: str):
        super().__init__(
            message="This request is already being processed. Please wait, do not resubmit.",
            error_code=ErrorCode.IDEMPOTENCY_IN_PROGRESS,
            status_code=409,
            details={"scope": scope}
        )


class IdempotencyKeyReusedError(AppException):
    """Idempotency key already used for a request with a different payload"""

    def __init__(self, scope: str):
        super().__init__(
            message="This idempotency key was already used for a different request.",
            error_code=ErrorCode.IDEMPOTENCY_KEY_REUSED,
            status_code=422,
            details={"scope": scope}
        )


class PaymentException(AppException):
    """Base exception for payment-flow errors surfaced to the caller"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        order_id: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if order_id:
            self.details["order_id"] = order_id


class MalformedPayloadError(PaymentException):
    """Provider payload is missing the fields needed to correlate it"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.MALFORMED_PAYLOAD,
            details=details
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class PaymentProviderError(ExternalServiceException):
    """M-Pesa Daraja call failed (transient unless ``retryable`` is False)"""

    def __init__(self, message: str, details: dict[str, Any] | None = None, retryable: bool = True):
        super().__init__(
            service_name="mpesa",
            message=f"M-Pesa API error: {message}",
            error_code=ErrorCode.MPESA_ERROR,
            details=details
        )
        self.retryable = retryable

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        max_response_chars: int = 500
    ) -> "PaymentProviderError":
        """Build from an httpx response; 5xx and 429 are retryable, other 4xx are not"""
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        retryable = status_code is None or status_code >= 500 or status_code == 429
        return cls(
            message=f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
            retryable=retryable,
        )


class WhatsAppError(ExternalServiceException):
    """Raised when the WhatsApp Cloud API rejects a message"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="whatsapp",
            message=f"WhatsApp API error: {message}",
            error_code=ErrorCode.WHATSAPP_ERROR,
            details=details
        )


class StateConflictError(AppException):
    """Requested transition is refused by the state machine or role rules"""

    def __init__(
        self,
        reason: str,
        error_code: ErrorCode = ErrorCode.TRANSITION_NOT_PERMITTED,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=reason,
            error_code=error_code,
            status_code=409,
            details=details
        )


class InvalidStateTransitionError(StateConflictError):
    """Raised when the transition table has no such edge"""

    def __init__(self, current_state: str, target_state: str, order_id: str | None = None):
        super().__init__(
            reason=f"Invalid transition from {current_state} to {target_state}",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            details={
                "current_state": current_state,
                "target_state": target_state,
                "order_id": order_id
            }
        )

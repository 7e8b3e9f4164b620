"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the
idempotency gate, the webhook registry and the inbound gateway.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors
    INTERNAL_ERROR = "internal_error"
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"

    # Idempotency errors
    IDEMPOTENCY_KEY_REUSED = "idempotency_key_reused"
    IDEMPOTENCY_KEY_IN_USE = "idempotency_key_in_use"
    IDEMPOTENCY_KEY_INVALID = "idempotency_key_invalid"

    # Webhook errors
    INVALID_SIGNATURE = "invalid_signature"
    UNKNOWN_WEBHOOK_SOURCE = "unknown_webhook_source"
    ENDPOINT_NOT_FOUND = "webhook_endpoint_not_found"
    DELIVERY_NOT_FOUND = "webhook_delivery_not_found"
    DELIVERY_INVALID_STATUS = "webhook_delivery_invalid_status"
    DELIVERY_FAILED = "webhook_delivery_failed"
    DELIVERY_EXHAUSTED = "webhook_delivery_exhausted"
    INCOMING_EVENT_NOT_FOUND = "incoming_event_not_found"
    INCOMING_EVENT_INVALID_STATUS = "incoming_event_invalid_status"


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


# ==================== Idempotency ====================

class IdempotencyException(AppException):
    """Base exception for idempotency-key errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: int,
        idempotency_key: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        if idempotency_key:
            self.details["idempotency_key"] = idempotency_key


class IdempotencyConflictError(IdempotencyException):
    """Raised when a key is reused with different request parameters (never executes)"""

    def __init__(self, idempotency_key: str):
        super().__init__(
            message="Idempotency-Key was already used with different request parameters",
            error_code=ErrorCode.IDEMPOTENCY_KEY_REUSED,
            status_code=422,
            idempotency_key=idempotency_key,
        )


class IdempotencyLockedError(IdempotencyException):
    """Raised when a request with the same key is still being processed"""

    def __init__(self, idempotency_key: str, retry_after_seconds: int):
        super().__init__(
            message="A request with this Idempotency-Key is already in progress",
            error_code=ErrorCode.IDEMPOTENCY_KEY_IN_USE,
            status_code=409,
            idempotency_key=idempotency_key,
            details={"retry_after_seconds": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds


# ==================== Webhooks ====================

class SignatureError(AppException):
    """Raised when a webhook signature is missing, malformed, wrong or expired"""

    def __init__(self, reason: str, source: str | None = None):
        super().__init__(
            message=f"Invalid webhook signature: {reason}",
            error_code=ErrorCode.INVALID_SIGNATURE,
            status_code=400,
            details={"reason": reason}
        )
        self.reason = reason
        if source:
            self.details["source"] = source


class WebhookEndpointNotFoundError(NotFoundException):
    """Raised when a webhook endpoint does not exist"""

    def __init__(self, endpoint_id: int):
        super().__init__("Webhook endpoint", endpoint_id, ErrorCode.ENDPOINT_NOT_FOUND)


class WebhookDeliveryNotFoundError(NotFoundException):
    """Raised when a webhook delivery does not exist"""

    def __init__(self, delivery_id: int):
        super().__init__("Webhook delivery", delivery_id, ErrorCode.DELIVERY_NOT_FOUND)


class DeliveryStatusError(AppException):
    """Raised when an operator action does not fit the delivery's current status"""

    def __init__(self, delivery_id: int, current_status: str, allowed: list[str]):
        super().__init__(
            message=f"Delivery {delivery_id} has status '{current_status}', required one of {allowed}",
            error_code=ErrorCode.DELIVERY_INVALID_STATUS,
            status_code=409,
            details={
                "delivery_id": delivery_id,
                "current_status": current_status,
                "allowed_statuses": allowed,
            }
        )


class TransientDeliveryError(AppException):
    """Raised by a delivery attempt that may succeed later (timeout, network, non-2xx)"""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.DELIVERY_FAILED,
            status_code=502,
            details={"response_status": status_code}
        )
        self.response_status = status_code
        self.response_body = response_body

    @classmethod
    def from_response(
        cls,
        response: Any,
        *,
        max_response_chars: int = 1000
    ) -> "TransientDeliveryError":
        """
        יצירת TransientDeliveryError מתוך HTTP response (למשל httpx.Response).

        גוף התשובה נחתך ל-max_response_chars כדי שלא יישמר/יירשם בלוג במלואו.
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=f"Endpoint returned status {status_code}",
            status_code=status_code,
            response_body=response_text[:max_response_chars],
        )


class DeliveryExhaustedError(AppException):
    """Terminal failure of a delivery after the maximum number of attempts"""

    def __init__(self, delivery_id: int, attempts: int):
        super().__init__(
            message=f"Delivery {delivery_id} failed after {attempts} attempts",
            error_code=ErrorCode.DELIVERY_EXHAUSTED,
            status_code=500,
            details={"delivery_id": delivery_id, "attempts": attempts}
        )


class UnknownWebhookSourceError(NotFoundException):
    """Raised when an inbound webhook arrives for a source with no configuration"""

    def __init__(self, source: str):
        super().__init__("Webhook source", source, ErrorCode.UNKNOWN_WEBHOOK_SOURCE)


class IncomingEventNotFoundError(NotFoundException):
    """Raised when an inbound webhook event does not exist"""

    def __init__(self, source: str, event_id: str):
        super().__init__(
            "Incoming webhook event", f"{source}/{event_id}", ErrorCode.INCOMING_EVENT_NOT_FOUND
        )


class IncomingEventStatusError(AppException):
    """Raised when an operator retry targets an event that is not in error"""

    def __init__(self, source: str, event_id: str, current_status: str):
        super().__init__(
            message=f"Incoming event {source}/{event_id} has status '{current_status}', required 'error'",
            error_code=ErrorCode.INCOMING_EVENT_INVALID_STATUS,
            status_code=409,
            details={"source": source, "event_id": event_id, "current_status": current_status}
        )

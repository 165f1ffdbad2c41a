from __future__ import annotations

from typing import Any, Dict, Optional


class BaseAPIException(Exception):
    """Base exception for all marketplace errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class APIError(BaseAPIException):
    """Generic API error."""
    def __init__(self, message: str = "An error occurred", **kwargs):
        super().__init__(message, status_code=500, **kwargs)


class NotFoundError(BaseAPIException):
    """Resource not found."""
    def __init__(self, message: str = "Resource not found", **kwargs):
        super().__init__(message, status_code=404, **kwargs)


class ValidationError(BaseAPIException):
    """Validation error."""
    def __init__(self, message: str = "Validation error", **kwargs):
        super().__init__(message, status_code=422, **kwargs)


class ConflictError(BaseAPIException):
    """Resource conflict."""
    def __init__(self, message: str = "Resource conflict", **kwargs):
        super().__init__(message, status_code=409, **kwargs)


class BusinessRuleError(BaseAPIException):
    """Business rule violation."""
    def __init__(self, message: str = "Business rule violation", **kwargs):
        super().__init__(message, status_code=400, **kwargs)


class DatabaseError(BaseAPIException):
    """Database error."""
    def __init__(self, message: str = "Database error", **kwargs):
        super().__init__(message, status_code=500, **kwargs)


class DeliveryError(BaseAPIException):
    """Delivery error."""
    def __init__(self, message: str = "Delivery error", **kwargs):
        super().__init__(message, status_code=500, **kwargs)


class ExternalServiceError(BaseAPIException):
    """External service error."""
    def __init__(self, message: str = "External service error", **kwargs):
        super().__init__(message, status_code=502, **kwargs)


class ServiceUnavailableError(BaseAPIException):
    """Service unavailable."""
    def __init__(self, message: str = "Service unavailable", **kwargs):
        super().__init__(message, status_code=503, **kwargs)


# Domain errors

class NoEligibleProvidersError(BusinessRuleError):
    """Matching found no provider for a service request."""
    def __init__(self, service_request_id: Optional[int] = None, reason: str = "no_candidates", **kwargs):
        kwargs.setdefault("code", "no_eligible_providers")
        kwargs.setdefault("details", {"service_request_id": service_request_id, "reason": reason})
        super().__init__("No eligible providers for service request", **kwargs)
        self.status_code = 409
        self.service_request_id = service_request_id


class InvalidTransitionError(ConflictError):
    """A status change that the state machine does not allow."""
    def __init__(self, entity: str, entity_id: Any, current: Any, target: Any, **kwargs):
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        kwargs.setdefault("code", "invalid_transition")
        kwargs.setdefault(
            "details",
            {"entity": entity, "id": entity_id, "from": current_value, "to": target_value},
        )
        super().__init__(
            f"Cannot move {entity} {entity_id} from {current_value} to {target_value}",
            **kwargs,
        )
        self.current = current
        self.target = target


class DuplicateLeadError(ConflictError):
    """A lead already exists for this service request and provider."""
    def __init__(self, service_request_id: int, provider_id: int, **kwargs):
        kwargs.setdefault("code", "duplicate_lead")
        kwargs.setdefault("details", {"service_request_id": service_request_id, "provider_id": provider_id})
        super().__init__("Lead already exists for provider", **kwargs)


class DuplicatePayoutError(ConflictError):
    """A payout record already exists for the lead."""
    def __init__(self, lead_id: int, **kwargs):
        kwargs.setdefault("code", "duplicate_payout")
        kwargs.setdefault("details", {"lead_id": lead_id})
        super().__init__("Payout already exists for lead", **kwargs)
        self.lead_id = lead_id


class ExternalPaymentError(ExternalServiceError):
    """The payment processor rejected or failed a capture or transfer."""
    def __init__(self, message: str = "Payment processor error", **kwargs):
        kwargs.setdefault("code", "payment_error")
        super().__init__(message, **kwargs)


class LeadPaymentError(BusinessRuleError):
    """The provider could not be charged the lead cost, so the lead was not accepted."""
    def __init__(self, lead_id: int, reason: str, **kwargs):
        kwargs.setdefault("code", "lead_payment_failed")
        kwargs.setdefault("details", {"lead_id": lead_id, "reason": reason})
        super().__init__("Lead cost could not be charged", **kwargs)
        self.status_code = 402
        self.lead_id = lead_id


class DeliveryFailure(DeliveryError):
    """A single notification send attempt failed."""
    def __init__(self, message: str = "Notification delivery failed", retryable: bool = True, **kwargs):
        kwargs.setdefault("code", "delivery_failed")
        super().__init__(message, **kwargs)
        self.retryable = retryable

from __future__ import annotations

from typing import Any


class ServiceError(ValueError):
    status_code = 400
    default_code = 'VALIDATION_ERROR'

    def __init__(self, message: str, *, code: str | None = None, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details

    def to_payload(self) -> dict:
        payload: dict[str, Any] = {'error': self.message, 'code': self.code}
        if self.details is not None:
            payload['details'] = self.details
        return payload


class ValidationFailed(ServiceError):
    status_code = 400
    default_code = 'VALIDATION_ERROR'


class NotFound(ServiceError):
    status_code = 404
    default_code = 'NOT_FOUND'


class Forbidden(ServiceError):
    status_code = 403
    default_code = 'FORBIDDEN'


class Conflict(ServiceError):
    status_code = 409
    default_code = 'CONFLICT'


class InvalidState(ServiceError):
    status_code = 409
    default_code = 'INVALID_STATE'


class RateLimited(ServiceError):
    status_code = 429
    default_code = 'RATE_LIMITED'


class PaymentGatewayError(ServiceError):
    status_code = 502
    default_code = 'PAYMENT_GATEWAY_ERROR'


class Unauthorized(ServiceError):
    status_code = 401
    default_code = 'UNAUTHORIZED'

from __future__ import annotations

from enum import Enum
from typing import Any, Dict


class ErrorKind(str, Enum):
    VALIDATION = "Validation"
    NOT_FOUND = "NotFound"
    CONFLICT = "Conflict"
    CAPACITY_EXCEEDED = "CapacityExceeded"
    ACTIVE_SUBSCRIPTION_EXISTS = "ActiveSubscriptionExists"
    GATEWAY_UNAVAILABLE = "GatewayUnavailable"
    CONFIGURATION_ERROR = "ConfigurationError"


HTTP_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.CAPACITY_EXCEEDED: 409,
    ErrorKind.ACTIVE_SUBSCRIPTION_EXISTS: 409,
    ErrorKind.GATEWAY_UNAVAILABLE: 503,
    ErrorKind.CONFIGURATION_ERROR: 500,
}

# Seconds a client should wait before retrying a gateway call
GATEWAY_RETRY_AFTER = 5


class ServiceError(Exception):
    """Raised by the service layer; rendered as JSON by the app exception handler.

    `extra` carries structured context for the caller (e.g. the existing
    subscription on ActiveSubscriptionExists).
    """

    def __init__(self, kind: ErrorKind, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.extra = extra

    @property
    def status_code(self) -> int:
        return HTTP_STATUS.get(self.kind, 500)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.kind.value, "detail": self.message}
        body.update(self.extra)
        return body

    def __repr__(self) -> str:
        return f"ServiceError({self.kind.value}, {self.message!r})"


def validation(message: str, **extra: Any) -> ServiceError:
    return ServiceError(ErrorKind.VALIDATION, message, **extra)


def not_found(message: str, **extra: Any) -> ServiceError:
    return ServiceError(ErrorKind.NOT_FOUND, message, **extra)


def conflict(message: str, **extra: Any) -> ServiceError:
    return ServiceError(ErrorKind.CONFLICT, message, **extra)


def gateway_unavailable(message: str, **extra: Any) -> ServiceError:
    return ServiceError(ErrorKind.GATEWAY_UNAVAILABLE, message, **extra)

import functools
import logging
from typing import Any, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import PyMongoError

logger = logging.getLogger("mousepad.errors")


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    """Bad or missing input. Caller-fixable, not worth retrying."""
    status_code = 400


class AuthorizationError(ServiceError):
    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404


class StorageError(ServiceError):
    """Database unavailable or a constraint was violated. Retryable."""
    status_code = 500


class ExternalServiceError(ServiceError):
    status_code = 502


class NotifierTimeoutError(ExternalServiceError):
    status_code = 504


class ServiceResult(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    message: Optional[str] = None
    count: Optional[int] = None
    status_code: int = Field(200, exclude=True)

    @classmethod
    def ok(cls, data: Any = None, status_code: int = 200, message: Optional[str] = None,
           count: Optional[int] = None) -> "ServiceResult":
        return cls(success=True, data=data, message=message, count=count, status_code=status_code)

    @classmethod
    def fail(cls, error: str, status_code: int) -> "ServiceResult":
        return cls(success=False, error=error, status_code=status_code)

    def body(self) -> dict:
        return self.model_dump(exclude_none=True)


def service_operation(action: str):
    """Turn every failure of a service method into a failed ServiceResult.

    The wrapped method's owner must expose ``settings`` so that server-side
    failures can be masked in production.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(self, *args, **kwargs):
            try:
                return func(self, *args, **kwargs)
            except ServiceError as exc:
                if exc.status_code >= 500:
                    logger.error("Error %s: %s", action, exc.message)
                return _failure(self, action, exc.message, exc.status_code)
            except PyMongoError as exc:
                logger.exception("Storage failure while %s", action)
                return _failure(self, action, str(exc), StorageError.status_code)
            except Exception as exc:
                logger.exception("Unexpected error while %s", action)
                return _failure(self, action, str(exc), 500)
        return wrapper
    return decorator


def _failure(service, action: str, message: str, status_code: int) -> ServiceResult:
    if status_code >= 500 and service.settings.is_production:
        message = f"Server error while {action}"
    return ServiceResult.fail(message, status_code)


def validate_model(model_cls, data: Any):
    """Build a pydantic model, reporting the first problem as a ValidationError."""
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = first.get("msg", "Invalid value")
        raise ValidationError(f"{location}: {message}" if location else message) from exc

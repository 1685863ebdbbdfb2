"""Error taxonomy shared by the gateway, services and HTTP routes.

Every failure the core can surface is an ``AppError`` subclass carrying a
machine-readable ``code`` and the HTTP status it maps to. Routes simply let
these propagate; ``install_exception_handlers`` renders them as
``{"error", "message", "details"}``.
"""

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    code = "app_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str = "", details: Any = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "details": self.details}


class AuthRequired(AppError):
    """No authenticated session."""

    code = "auth_required"
    status_code = 401


class CredentialMissing(AppError):
    code = "credential_missing"
    status_code = 401


class CredentialExpired(AppError):
    code = "credential_expired"
    status_code = 401


class AuthExpired(AppError):
    """Provider rejected the token (revoked, expired or invalidated upstream)."""

    code = "auth_expired"
    status_code = 401


class PermissionDenied(AppError):
    code = "permission_denied"
    status_code = 403


class ValidationError(AppError):
    code = "validation_error"
    status_code = 400

    def __init__(self, message: str, field: str | None = None, details: Any = None):
        super().__init__(message, details)
        self.field = field

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.field:
            data["details"] = {**(self.details or {}), "field": self.field}
        return data


class NotFound(AppError):
    code = "not_found"
    status_code = 404


class RateLimited(AppError):
    code = "rate_limited"
    status_code = 429
    retryable = True


class ProviderError(AppError):
    """Opaque upstream failure. ``provider_code``/``subcode`` echo the provider's error."""

    code = "provider_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        provider_code: int | str | None = None,
        subcode: int | None = None,
        details: Any = None,
    ):
        super().__init__(message, details)
        self.provider_code = provider_code
        self.subcode = subcode

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["details"] = {
            **(self.details or {}),
            "provider_code": self.provider_code,
            "subcode": self.subcode,
        }
        return data


class StorageError(AppError):
    code = "storage_error"
    status_code = 500


class ConfigurationError(AppError):
    """Server-side setting missing; not something the caller can fix."""

    code = "not_configured"
    status_code = 500


def install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def _app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # Global unhandled exception handler
    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.error(
            "Unhandled exception on %s %s: %s",
            request.method,
            request.url.path,
            str(exc),
            exc_info=True,
        )
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

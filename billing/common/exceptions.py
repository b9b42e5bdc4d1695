"""
Errores de dominio y su traducción a respuestas HTTP.

Los servicios lanzan estas excepciones; los handlers registrados en
``billing.main`` las convierten en JSON con el código de estado adecuado.
"""
import logging
import traceback
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from billing.core.config import settings

logger = logging.getLogger(__name__)


class BillingError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "billing_error"

    def __init__(self, detail: str, **extra: Any):
        super().__init__(detail)
        self.detail = detail
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.code, "detail": self.detail}
        body.update(self.extra)
        return body


class ValidationError(BillingError):
    """Entrada mal formada o fuera de rango. No se reintenta."""
    code = "validation_error"

    def __init__(self, detail: str, errors: Optional[List[Dict[str, Any]]] = None, **extra: Any):
        super().__init__(detail, errors=errors or [], **extra)
        self.errors = errors or []

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(message, errors=[{"field": field, "message": message}])


class NotFoundError(BillingError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class ConflictError(BillingError):
    """Colisión de unicidad; el cliente puede reenviar la creación."""
    status_code = status.HTTP_409_CONFLICT
    code = "conflict"

    def __init__(self, detail: str, **extra: Any):
        super().__init__(detail, retryable=True, **extra)


class SequenceConflictError(ConflictError):
    code = "sequence_conflict"


class StateError(BillingError):
    code = "invalid_state"

    def __init__(self, detail: str, current_state: Any = None, **extra: Any):
        state_value = getattr(current_state, "value", current_state)
        super().__init__(detail, current_state=state_value, **extra)
        self.current_state = current_state


class SignatureWorkflowError(StateError):
    code = "signature_error"


class ExpiredError(SignatureWorkflowError):
    status_code = status.HTTP_410_GONE
    code = "expired"

    def __init__(self, detail: str = "La solicitud de firma ha expirado", **extra: Any):
        super().__init__(detail, current_state="EXPIRED", **extra)


class AlreadySignedError(SignatureWorkflowError):
    code = "already_signed"

    def __init__(self, signed_at: Optional[datetime] = None, detail: str = "El documento ya fue firmado"):
        super().__init__(detail, current_state="SIGNED", signed_at=signed_at)
        self.signed_at = signed_at


class CancelledError(SignatureWorkflowError):
    status_code = status.HTTP_410_GONE
    code = "cancelled"

    def __init__(self, detail: str = "La solicitud de firma fue cancelada", **extra: Any):
        super().__init__(detail, current_state="CANCELLED", **extra)


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.detail}")
    else:
        logger.info(f"{exc.code} on {request.url.path}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg"),
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=jsonable_encoder({"error": ValidationError.code, "detail": "Datos inválidos", "errors": errors}),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    body: Dict[str, Any] = {"error": "internal_error", "detail": "Error interno del servidor"}
    if settings.ENVIRONMENT == "development":
        body["traceback"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BillingError, billing_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

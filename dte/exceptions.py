# dte/exceptions.py
# -*- coding: utf-8 -*-
"""
Taxonomía de errores del módulo DTE.

Cada error tiene un `code` estable (consumido por el frontend) y un
`http_status` que usa el exception handler de la API. Los errores de
validación y de estado se lanzan siempre ANTES de contactar al MH.
"""
from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional


class DteError(Exception):
    """Error base del módulo DTE."""

    code = "DTE_ERROR"
    http_status = 400
    default_detail = "Error al procesar el documento tributario."

    def __init__(self, detail: Optional[str] = None, *, code: Optional[str] = None, **extra: Any):
        self.detail = detail or self.default_detail
        if code:
            self.code = code
        self.extra = extra
        super().__init__(self.detail)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"code": self.code, "detail": self.detail}
        data.update(self.extra)
        return data


class NotFound(DteError):
    code = "NOT_FOUND"
    http_status = 404
    default_detail = "Documento no encontrado."


class InvalidState(DteError):
    code = "INVALID_STATE"
    http_status = 409
    default_detail = "El documento no está en un estado válido para esta operación."


class AlreadyInvalidated(DteError):
    code = "ALREADY_INVALIDATED"
    http_status = 409
    default_detail = "El documento ya tiene una anulación registrada."


class DeadlineExceeded(DteError):
    code = "DEADLINE_EXCEEDED"
    http_status = 400
    default_detail = "El plazo legal para anular el documento ha vencido."

    def __init__(self, deadline: date, detail: Optional[str] = None):
        self.deadline = deadline
        super().__init__(
            detail or f"El plazo para anular venció el {deadline:%d/%m/%Y}.",
            deadline=deadline.isoformat(),
        )


class ValidationError(DteError):
    code = "VALIDATION_ERROR"
    http_status = 400
    default_detail = "Datos inválidos."


class Conflict(DteError):
    code = "CONFLICT"
    http_status = 409
    default_detail = "El documento fue modificado por otra operación. Intente nuevamente."


class AuthorityRejected(DteError):
    """El MH rechazó el documento o evento. Nunca se reintenta automáticamente."""

    code = "AUTHORITY_REJECTED"
    http_status = 422
    default_detail = "El Ministerio de Hacienda rechazó el documento."

    def __init__(
        self,
        reasons: List[str],
        detail: Optional[str] = None,
        codigo_msg: Optional[str] = None,
    ):
        self.reasons = list(reasons)
        self.codigo_msg = codigo_msg
        super().__init__(
            detail or self.default_detail,
            reasons=self.reasons,
            codigo_msg=codigo_msg,
        )


class TransportFailure(DteError):
    """No hubo respuesta utilizable del MH (red, timeout, 5xx). Reintentable."""

    code = "TRANSPORT_FAILURE"
    http_status = 503
    default_detail = (
        "No fue posible comunicarse con el Ministerio de Hacienda. "
        "El documento quedó registrado y puede reenviarse."
    )

    def __init__(self, detail: Optional[str] = None, **extra: Any):
        extra.setdefault("retryable", True)
        super().__init__(detail, **extra)


class SigningError(TransportFailure):
    """El servicio firmador no respondió o devolvió error."""

    code = "SIGNING_FAILED"
    default_detail = "No fue posible firmar el documento con el servicio firmador."

# dte/api/exception_handler.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging

from rest_framework.response import Response
from rest_framework.views import exception_handler

from dte.exceptions import DteError, TransportFailure

logger = logging.getLogger(__name__)


def dte_exception_handler(exc, context):
    """
    Convierte cualquier DteError en {"code", "detail", ...extra} con su
    status HTTP. El resto de excepciones sigue el manejo estándar de DRF.
    """
    if isinstance(exc, DteError):
        view = context.get("view")
        logger.info(
            "DteError %s en %s: %s",
            exc.code,
            view.__class__.__name__ if view else "-",
            exc.detail,
        )
        response = Response(exc.to_dict(), status=exc.http_status)
        if isinstance(exc, TransportFailure):
            response["Retry-After"] = "60"
        return response

    return exception_handler(exc, context)

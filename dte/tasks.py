# dte/tasks.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from celery import shared_task

from dte.exceptions import AuthorityRejected, DteError, NotFound, TransportFailure
from dte.services.workflow import emitir_documento, reenviar_contingencias_pendientes

logger = logging.getLogger(__name__)


# =====================================================
# Tarea: Emisión (firma + transmisión) en background
# =====================================================


@shared_task(
    bind=True,
    max_retries=5,
    default_retry_delay=60,
)
def emitir_documento_task(self, documento_id: int) -> Dict[str, Any]:
    """
    Firma y transmite un DTE fuera del request.

    - Rechazo del MH: no se reintenta (el documento queda RECHAZADO).
    - Falla de transporte: el documento queda en CONTINGENCIA y se reintenta
      con backoff exponencial hasta max_retries.
    """
    logger.info("emitir_documento_task iniciado para documento_id=%s", documento_id)

    try:
        documento = emitir_documento(documento_id)
    except NotFound:
        logger.error("emitir_documento_task: documento %s no existe.", documento_id)
        return {"ok": False, "error": "NOT_FOUND"}
    except AuthorityRejected as exc:
        return {"ok": False, "error": exc.code, "reasons": exc.reasons}
    except TransportFailure as exc:
        if self.request.retries < self.max_retries:
            countdown = 60 * (2**self.request.retries)
            logger.warning(
                "emitir_documento_task: documento %s en contingencia, reintento en %ss",
                documento_id,
                countdown,
            )
            raise self.retry(exc=exc, countdown=countdown)
        return {"ok": False, "error": exc.code, "detail": exc.detail}
    except DteError as exc:
        logger.warning("emitir_documento_task: documento %s: %s", documento_id, exc.detail)
        return {"ok": False, "error": exc.code, "detail": exc.detail}
    except Exception as exc:  # noqa: BLE001
        logger.exception(
            "Error inesperado en emitir_documento_task para documento %s: %s",
            documento_id,
            exc,
        )
        if self.request.retries < self.max_retries:
            countdown = 60 * (2**self.request.retries)
            raise self.retry(exc=exc, countdown=countdown)
        return {"ok": False, "error": str(exc)}

    logger.info(
        "emitir_documento_task finalizado para documento_id=%s, estado=%s",
        documento_id,
        documento.estado,
    )
    return {"ok": True, "estado": documento.estado, "sello_recepcion": documento.sello_recepcion}


# =====================================================
# Tarea periódica: reenvío de contingencias
# =====================================================


@shared_task
def reenviar_contingencias_task(limite: Optional[int] = None) -> Dict[str, int]:
    return reenviar_contingencias_pendientes(limite=limite)

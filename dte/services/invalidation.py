# dte/services/invalidation.py
# -*- coding: utf-8 -*-
"""
Invalidación (anulación) de DTE procesados por el MH.

Todas las validaciones se hacen antes de contactar al firmador o al MH.
El resultado del MH y el cambio de estado del documento se escriben en una
misma transacción.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import QuerySet
from django.utils import timezone

from dte.exceptions import (
    AlreadyInvalidated,
    AuthorityRejected,
    Conflict,
    DeadlineExceeded,
    InvalidState,
    NotFound,
    SigningError,
    TransportFailure,
    ValidationError,
)
from dte.models import FiscalDocument, InvalidationEvent
from dte.services.builders import VERSION_EVENTO_ANULACION, build_evento_anulacion
from dte.services.deadlines import BusinessDayPredicate, can_invalidate, holiday_calendar
from dte.services.gateway import (
    KIND_ANULACION,
    Accepted,
    GatewayResult,
    Rejected,
    TaxAuthorityGateway,
    TransportError,
    get_gateway,
)
from dte.services.workflow import (
    _mensaje,
    _update_document_status,
    cargar_documento,
    nuevo_codigo_generacion,
)

logger = logging.getLogger("dte.mh")

EstadoEvento = InvalidationEvent.Estado
TipoAnulacion = InvalidationEvent.TipoAnulacion

TRANSICIONES_EVENTO: Dict[str, set] = {
    EstadoEvento.PENDIENTE: {EstadoEvento.FIRMADA},
    EstadoEvento.FIRMADA: {EstadoEvento.TRANSMITIDA},
    EstadoEvento.TRANSMITIDA: {
        EstadoEvento.TRANSMITIDA,
        EstadoEvento.PROCESADA,
        EstadoEvento.RECHAZADA,
    },
    EstadoEvento.PROCESADA: set(),
    EstadoEvento.RECHAZADA: set(),
}


def default_business_day() -> BusinessDayPredicate:
    return holiday_calendar(getattr(settings, "DTE_HOLIDAYS", []))


def _update_event_status(
    evento: InvalidationEvent,
    estado: str,
    mensajes: List[Dict[str, Any]] | None = None,
    extra_updates: Dict[str, Any] | None = None,
) -> InvalidationEvent:
    """Mismo contrato que _update_document_status, para eventos de invalidación."""
    mensajes = mensajes or []
    extra_updates = extra_updates or {}

    with transaction.atomic():
        actual = InvalidationEvent.objects.select_for_update().get(pk=evento.pk)
        if actual.estado != evento.estado:
            raise Conflict(
                f"La anulación cambió de estado ({evento.estado} -> {actual.estado}) durante la operación.",
                estado_actual=actual.estado,
            )
        if estado not in TRANSICIONES_EVENTO.get(actual.estado, set()):
            raise InvalidState(
                f"Transición de anulación no permitida: {actual.estado} -> {estado}.",
                estado_actual=actual.estado,
            )

        actual.mensajes = (actual.mensajes or []) + mensajes
        actual.estado = estado
        for field, value in extra_updates.items():
            setattr(actual, field, value)
        actual.save()

    logger.info(
        "Anulación %s (documento %s) actualizada a estado=%s",
        actual.codigo_generacion,
        actual.documento_id,
        actual.estado,
    )
    return actual


def _registrar_error_evento(evento: InvalidationEvent, origen: str, error: str) -> None:
    with transaction.atomic():
        actual = InvalidationEvent.objects.select_for_update().get(pk=evento.pk)
        actual.mensajes = (actual.mensajes or []) + [_mensaje(origen, error)]
        actual.ultimo_error = error
        actual.save(update_fields=["mensajes", "ultimo_error", "updated_at"])


def _tiene_anulacion_activa(documento: FiscalDocument) -> bool:
    return (
        InvalidationEvent.objects.filter(documento=documento)
        .exclude(estado=EstadoEvento.RECHAZADA)
        .exists()
    )


def _validar_parte(parte: Optional[Dict[str, Any]], rol: str) -> Dict[str, str]:
    parte = parte or {}
    nombre = (parte.get("nombre") or "").strip()
    num_doc = (parte.get("num_doc") or "").strip()
    if not nombre or not num_doc:
        raise ValidationError(
            f"Debe indicar nombre y número de documento del {rol}.",
            code="PARTY_REQUIRED",
            campo=rol,
        )
    return {
        "nombre": nombre,
        "tipo_doc": (parte.get("tipo_doc") or "13").strip(),
        "num_doc": num_doc,
    }


def _resolver_reemplazo(
    documento: FiscalDocument,
    documento_reemplazo_id: Optional[int],
    codigo_generacion_reemplazo: Optional[str],
) -> FiscalDocument:
    try:
        if documento_reemplazo_id:
            reemplazo = FiscalDocument.objects.get(pk=documento_reemplazo_id)
        else:
            reemplazo = FiscalDocument.objects.get_by_generation_code(codigo_generacion_reemplazo)
    except (FiscalDocument.DoesNotExist, NotFound):
        raise ValidationError(
            "El documento de reemplazo no existe.",
            code="REPLACEMENT_REQUIRED",
        )
    if reemplazo.pk == documento.pk:
        raise ValidationError(
            "El documento de reemplazo debe ser distinto del documento a invalidar.",
            code="REPLACEMENT_REQUIRED",
        )
    if reemplazo.estado != FiscalDocument.Estado.PROCESADO:
        raise ValidationError(
            f"El documento de reemplazo debe estar PROCESADO (estado actual: {reemplazo.estado}).",
            code="REPLACEMENT_REQUIRED",
        )
    return reemplazo


def invalidar_documento(
    documento_id: int,
    tipo_anulacion: int,
    motivo: Optional[str] = None,
    documento_reemplazo_id: Optional[int] = None,
    codigo_generacion_reemplazo: Optional[str] = None,
    responsable: Optional[Dict[str, Any]] = None,
    solicitante: Optional[Dict[str, Any]] = None,
    user=None,
    now: Optional[datetime | date] = None,
    gateway: Optional[TaxAuthorityGateway] = None,
    is_business_day: Optional[BusinessDayPredicate] = None,
) -> InvalidationEvent:
    """
    Registra, firma y transmite el evento de invalidación de un DTE.

    Orden de validación:
    1. el documento existe (NotFound)
    2. está PROCESADO (InvalidState)
    3. no tiene otra anulación activa (AlreadyInvalidated)
    4. tipo 1 nombra un documento de reemplazo (REPLACEMENT_REQUIRED)
    5. está dentro del plazo legal (DeadlineExceeded)
    6. el reemplazo existe, es distinto y está PROCESADO (REPLACEMENT_REQUIRED)
    7. tipo 3 trae motivo (MOTIVE_REQUIRED); responsable y solicitante (PARTY_REQUIRED)
    """
    documento = cargar_documento(documento_id)

    if documento.estado != FiscalDocument.Estado.PROCESADO:
        raise InvalidState(
            f"Sólo se pueden invalidar documentos PROCESADOS (estado actual: {documento.estado}).",
            estado_actual=documento.estado,
        )
    if _tiene_anulacion_activa(documento):
        raise AlreadyInvalidated()

    try:
        tipo_anulacion = TipoAnulacion(int(tipo_anulacion))
    except (TypeError, ValueError):
        raise ValidationError(
            f"Tipo de anulación inválido: {tipo_anulacion}.",
            code="INVALID_REASON",
        )

    nombra_reemplazo = bool(documento_reemplazo_id or (codigo_generacion_reemplazo or "").strip())
    if tipo_anulacion == TipoAnulacion.ERROR_INFORMACION and not nombra_reemplazo:
        raise ValidationError(
            "La anulación por error en la información requiere el documento de reemplazo.",
            code="REPLACEMENT_REQUIRED",
        )

    ahora = now or timezone.localtime()
    if isinstance(ahora, datetime) and timezone.is_aware(ahora):
        ahora = timezone.localtime(ahora)
    decision = can_invalidate(
        documento.tipo_dte,
        documento.fecha_emision,
        ahora,
        is_business_day or default_business_day(),
    )
    if not decision.allowed:
        raise DeadlineExceeded(decision.deadline)

    reemplazo = None
    if nombra_reemplazo:
        reemplazo = _resolver_reemplazo(documento, documento_reemplazo_id, codigo_generacion_reemplazo)

    motivo = (motivo or "").strip()
    if tipo_anulacion == TipoAnulacion.OTRO and not motivo:
        raise ValidationError(
            "La anulación por 'Otro' requiere un motivo.",
            code="MOTIVE_REQUIRED",
        )
    resp = _validar_parte(responsable, "responsable")
    sol = _validar_parte(solicitante, "solicitante")

    ahora_dt = ahora if isinstance(ahora, datetime) else timezone.localtime()
    try:
        with transaction.atomic():
            # Serializa anulaciones concurrentes sobre el mismo documento
            target = FiscalDocument.objects.select_for_update().get(pk=documento.pk)
            if target.estado != FiscalDocument.Estado.PROCESADO:
                raise InvalidState(
                    f"Sólo se pueden invalidar documentos PROCESADOS (estado actual: {target.estado}).",
                    estado_actual=target.estado,
                )
            if _tiene_anulacion_activa(target):
                raise AlreadyInvalidated()

            evento = InvalidationEvent.objects.create(
                codigo_generacion=nuevo_codigo_generacion(),
                documento=target,
                documento_reemplazo=reemplazo,
                tipo_anulacion=tipo_anulacion,
                motivo=motivo,
                responsable_nombre=resp["nombre"],
                responsable_tipo_doc=resp["tipo_doc"],
                responsable_num_doc=resp["num_doc"],
                solicitante_nombre=sol["nombre"],
                solicitante_tipo_doc=sol["tipo_doc"],
                solicitante_num_doc=sol["num_doc"],
                fecha_anulacion=ahora.date() if isinstance(ahora, datetime) else ahora,
                hora_anulacion=ahora_dt.time().replace(microsecond=0),
                mensajes=[_mensaje("CREACION", "Anulación registrada")],
                created_by=user if getattr(user, "is_authenticated", False) else None,
            )
    except IntegrityError:
        logger.warning("Anulación concurrente detectada para documento %s", documento.pk)
        raise Conflict("Otra anulación del documento se registró al mismo tiempo.")

    logger.info(
        "Anulación %s registrada para DTE %s tipo=%s",
        evento.codigo_generacion,
        documento.codigo_generacion,
        int(tipo_anulacion),
    )
    return _procesar_evento(evento, gateway or get_gateway())


def _firmar_evento(evento: InvalidationEvent, gateway: TaxAuthorityGateway) -> InvalidationEvent:
    payload = build_evento_anulacion(evento)
    try:
        firmado = gateway.sign(payload)
    except SigningError as exc:
        _registrar_error_evento(evento, "FIRMA", exc.detail)
        raise SigningError(exc.detail, evento_id=evento.pk)
    return _update_event_status(
        evento,
        EstadoEvento.FIRMADA,
        mensajes=[_mensaje("FIRMA", "Evento firmado")],
        extra_updates={"evento_json": payload, "evento_firmado": firmado, "ultimo_error": ""},
    )


def _registrar_sello_evento(evento: InvalidationEvent, resultado: Accepted) -> None:
    """Guarda el sello del MH antes de cambiar estados; sobrevive a un Conflict posterior."""
    with transaction.atomic():
        actual = InvalidationEvent.objects.select_for_update().get(pk=evento.pk)
        actual.mensajes = (actual.mensajes or []) + [
            _mensaje("MH", resultado.descripcion_msg or "Anulación recibida", sello=resultado.sello_recepcion)
        ]
        actual.sello_recepcion = resultado.sello_recepcion
        actual.fecha_procesamiento = resultado.fecha_procesamiento or timezone.now()
        actual.codigo_msg = resultado.codigo_msg
        actual.descripcion_msg = resultado.descripcion_msg[:500]
        actual.observaciones_mh = resultado.observaciones
        actual.save(
            update_fields=[
                "mensajes",
                "sello_recepcion",
                "fecha_procesamiento",
                "codigo_msg",
                "descripcion_msg",
                "observaciones_mh",
                "updated_at",
            ]
        )


def _confirmar_anulacion(evento: InvalidationEvent) -> InvalidationEvent:
    """
    Evento TRANSMITIDA con sello -> PROCESADA y documento -> INVALIDADO, en una
    sola transacción. Si el documento cambió entretanto, el evento queda
    TRANSMITIDA con su sello y reintentar_anulacion lo confirma sin reenviarlo.
    """
    try:
        with transaction.atomic():
            evento = _update_event_status(
                evento,
                EstadoEvento.PROCESADA,
                mensajes=[_mensaje("ANULACION", "Anulación procesada")],
                extra_updates={"ultimo_error": ""},
            )
            documento = cargar_documento(evento.documento_id)
            _update_document_status(
                documento,
                FiscalDocument.Estado.INVALIDADO,
                mensajes=[_mensaje("ANULACION", "Documento invalidado", evento=evento.codigo_generacion)],
                extra_updates={"documento_reemplazo_id": evento.documento_reemplazo_id},
            )
    except (Conflict, InvalidState) as exc:
        _registrar_error_evento(evento, "ANULACION", exc.detail)
        logger.error(
            "Anulación %s aceptada por el MH pero el documento %s no pudo marcarse INVALIDADO: %s",
            evento.codigo_generacion,
            evento.documento_id,
            exc.detail,
        )
        raise
    logger.info("DTE %s invalidado (evento %s)", documento.codigo_generacion, evento.codigo_generacion)
    return evento


def _aplicar_resultado_evento(evento: InvalidationEvent, resultado: GatewayResult) -> InvalidationEvent:
    if isinstance(resultado, Accepted):
        _registrar_sello_evento(evento, resultado)
        return _confirmar_anulacion(evento)

    if isinstance(resultado, Rejected):
        _update_event_status(
            evento,
            EstadoEvento.RECHAZADA,
            mensajes=[_mensaje("MH", "Anulación rechazada", observaciones=resultado.reasons)],
            extra_updates={
                "codigo_msg": resultado.codigo_msg,
                "descripcion_msg": resultado.descripcion_msg[:500],
                "observaciones_mh": resultado.reasons,
                "ultimo_error": "; ".join(resultado.reasons),
            },
        )
        logger.warning("Anulación %s rechazada por el MH: %s", evento.codigo_generacion, resultado.reasons)
        raise AuthorityRejected(
            resultado.reasons,
            detail=resultado.descripcion_msg or "El Ministerio de Hacienda rechazó la anulación.",
            codigo_msg=resultado.codigo_msg or None,
        )

    error = resultado.error if isinstance(resultado, TransportError) else repr(resultado)
    _registrar_error_evento(evento, "RED", error)
    logger.warning("Anulación %s sin respuesta del MH: %s", evento.codigo_generacion, error)
    raise TransportFailure(
        f"No fue posible transmitir la anulación al MH: {error}",
        evento_id=evento.pk,
        estado=evento.estado,
    )


def _procesar_evento(evento: InvalidationEvent, gateway: TaxAuthorityGateway) -> InvalidationEvent:
    """Avanza el evento desde su estado actual hasta el resultado del MH."""
    if evento.estado == EstadoEvento.PENDIENTE:
        evento = _firmar_evento(evento, gateway)

    evento = _update_event_status(
        evento,
        EstadoEvento.TRANSMITIDA,
        mensajes=[_mensaje("ENVIO", "Transmitiendo anulación al MH", intento=evento.intentos_transmision + 1)],
        extra_updates={"intentos_transmision": evento.intentos_transmision + 1},
    )

    try:
        resultado = gateway.transmit(
            KIND_ANULACION,
            evento.evento_firmado,
            codigo_generacion=evento.codigo_generacion,
            version=VERSION_EVENTO_ANULACION,
            ambiente=evento.documento.ambiente,
        )
    except Exception as exc:  # noqa: BLE001
        logger.exception("Error inesperado transmitiendo anulación %s: %s", evento.codigo_generacion, exc)
        resultado = TransportError(error=str(exc))

    return _aplicar_resultado_evento(evento, resultado)


def obtener_anulacion(evento_id: int) -> InvalidationEvent:
    try:
        return InvalidationEvent.objects.select_related("documento", "documento_reemplazo").get(pk=evento_id)
    except InvalidationEvent.DoesNotExist:
        raise NotFound(f"Anulación {evento_id} no encontrada.")


def reintentar_anulacion(
    evento_id: int,
    gateway: Optional[TaxAuthorityGateway] = None,
) -> InvalidationEvent:
    """
    Reanuda una anulación que quedó PENDIENTE (falla del firmador), FIRMADA o
    TRANSMITIDA (falla de red). Una anulación PROCESADA se retorna sin cambios.
    """
    evento = obtener_anulacion(evento_id)
    if evento.estado == EstadoEvento.PROCESADA:
        return evento
    if evento.estado == EstadoEvento.RECHAZADA:
        raise InvalidState(
            "Una anulación rechazada no se reintenta; registre una nueva.",
            estado_actual=evento.estado,
        )
    if evento.estado == EstadoEvento.TRANSMITIDA and evento.sello_recepcion:
        # Ya aceptada por el MH: sólo falta aplicar el cambio de estado
        return _confirmar_anulacion(evento)
    return _procesar_evento(evento, gateway or get_gateway())


def listar_anulaciones(
    estado: Optional[str] = None,
    documento_id: Optional[int] = None,
    tipo_anulacion: Optional[int] = None,
    fecha_inicio: Optional[date] = None,
    fecha_fin: Optional[date] = None,
) -> QuerySet:
    qs = InvalidationEvent.objects.select_related("documento", "documento_reemplazo")
    if estado:
        qs = qs.filter(estado=estado)
    if documento_id:
        qs = qs.filter(documento_id=documento_id)
    if tipo_anulacion:
        qs = qs.filter(tipo_anulacion=tipo_anulacion)
    if fecha_inicio:
        qs = qs.filter(fecha_anulacion__gte=fecha_inicio)
    if fecha_fin:
        qs = qs.filter(fecha_anulacion__lte=fecha_fin)
    return qs.order_by("-created_at")

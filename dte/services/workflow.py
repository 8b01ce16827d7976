# dte/services/workflow.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
import uuid
from datetime import date, time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from dte.exceptions import (
    AuthorityRejected,
    Conflict,
    InvalidState,
    NotFound,
    SigningError,
    TransportFailure,
    ValidationError,
)
from dte.models import (
    VERSIONES_DTE,
    Correlativo,
    FiscalDocument,
    FiscalDocumentLine,
    Sucursal,
    TipoDte,
)
from dte.services.builders import TIPOS_PRECIO_SIN_IVA, build_dte_json
from dte.services.gateway import (
    KIND_DTE,
    Accepted,
    GatewayResult,
    Rejected,
    TaxAuthorityGateway,
    TransportError,
    get_gateway,
)

logger = logging.getLogger("dte.mh")

Estado = FiscalDocument.Estado
CENTAVO = Decimal("0.01")

# Transiciones permitidas; cualquier otra se rechaza con InvalidState
TRANSICIONES: Dict[str, set] = {
    Estado.BORRADOR: {Estado.FIRMADO},
    Estado.FIRMADO: {Estado.TRANSMITIDO},
    Estado.TRANSMITIDO: {
        Estado.TRANSMITIDO,
        Estado.PROCESADO,
        Estado.RECHAZADO,
        Estado.CONTINGENCIA,
    },
    Estado.CONTINGENCIA: {Estado.TRANSMITIDO},
    Estado.PROCESADO: {Estado.INVALIDADO},
    Estado.RECHAZADO: set(),
    Estado.INVALIDADO: set(),
}


def money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENTAVO, rounding=ROUND_HALF_UP)


def iva_rate() -> Decimal:
    return Decimal(str(getattr(settings, "DTE_IVA_RATE", Decimal("0.13"))))


def nuevo_codigo_generacion() -> str:
    return str(uuid.uuid4()).upper()


def _mensaje(origen: str, detalle: str, **extra: Any) -> Dict[str, Any]:
    data = {"origen": origen, "detalle": detalle, "fecha": timezone.now().isoformat()}
    data.update(extra)
    return data


def _update_document_status(
    documento: FiscalDocument,
    estado: str,
    mensajes: List[Dict[str, Any]] | None = None,
    extra_updates: Dict[str, Any] | None = None,
) -> FiscalDocument:
    """
    Helper centralizado para cambiar el estado de un DTE.

    - Relee la fila con select_for_update y exige que el estado en base de
      datos sea el mismo que el de la instancia recibida (escritura condicional).
    - Valida la transición contra TRANSICIONES.
    - Concatena mensajes nuevos en .mensajes y aplica extra_updates.

    Retorna la instancia releída y guardada; la instancia recibida no se modifica.
    """
    if mensajes is None:
        mensajes = []
    if extra_updates is None:
        extra_updates = {}

    with transaction.atomic():
        try:
            actual = FiscalDocument.objects.select_for_update().get(pk=documento.pk)
        except FiscalDocument.DoesNotExist:
            raise NotFound(f"Documento {documento.pk} no encontrado.")

        if actual.estado != documento.estado:
            raise Conflict(
                f"El documento cambió de estado ({documento.estado} -> {actual.estado}) "
                "durante la operación.",
                estado_actual=actual.estado,
            )
        if estado not in TRANSICIONES.get(actual.estado, set()):
            raise InvalidState(
                f"Transición no permitida: {actual.estado} -> {estado}.",
                estado_actual=actual.estado,
            )

        mensajes_existentes = actual.mensajes or []
        if not isinstance(mensajes_existentes, list):
            mensajes_existentes = [mensajes_existentes]

        actual.mensajes = mensajes_existentes + mensajes
        actual.estado = estado
        for field, value in extra_updates.items():
            setattr(actual, field, value)
        actual.save()

    logger.info(
        "DTE %s (%s) actualizado a estado=%s (mensajes+=%s)",
        actual.id,
        actual.codigo_generacion,
        actual.estado,
        len(mensajes),
    )
    return actual


def _registrar_error(documento: FiscalDocument, origen: str, error: str) -> None:
    """Anota un error en la bitácora sin cambiar el estado."""
    with transaction.atomic():
        actual = FiscalDocument.objects.select_for_update().get(pk=documento.pk)
        actual.mensajes = (actual.mensajes or []) + [_mensaje(origen, error)]
        actual.ultimo_error = error
        actual.save(update_fields=["mensajes", "ultimo_error", "updated_at"])


def cargar_documento(documento: FiscalDocument | int) -> FiscalDocument:
    """Relee el documento desde la base de datos (acepta instancia o id)."""
    pk = documento.pk if isinstance(documento, FiscalDocument) else documento
    try:
        return FiscalDocument.objects.select_related("sucursal", "documento_original").get(pk=pk)
    except FiscalDocument.DoesNotExist:
        raise NotFound(f"Documento {pk} no encontrado.")


# ============================================================
# Cálculo de montos
# ============================================================


def calcular_linea(
    tipo_dte: str,
    cantidad: Decimal,
    precio_unitario: Decimal,
    tipo_venta: str = FiscalDocumentLine.TipoVenta.GRAVADO,
    monto_descuento: Decimal = Decimal("0.00"),
    rate: Optional[Decimal] = None,
) -> Dict[str, Decimal]:
    """
    Montos de una línea según su tipo de venta.

    Para 03/05/06 el precio es sin IVA y el IVA se calcula encima.
    Para 01 el precio incluye IVA y ivaItem es informativo.
    11, 07 y 14 no generan IVA.
    """
    rate = iva_rate() if rate is None else rate
    monto = money(Decimal(cantidad) * Decimal(precio_unitario) - Decimal(monto_descuento or 0))

    montos = {
        "venta_no_sujeta": Decimal("0.00"),
        "venta_exenta": Decimal("0.00"),
        "venta_gravada": Decimal("0.00"),
        "iva_item": Decimal("0.00"),
    }
    if tipo_venta == FiscalDocumentLine.TipoVenta.NOSUJETO:
        montos["venta_no_sujeta"] = monto
    elif tipo_venta == FiscalDocumentLine.TipoVenta.EXENTO:
        montos["venta_exenta"] = monto
    else:
        montos["venta_gravada"] = monto
        if tipo_dte in TIPOS_PRECIO_SIN_IVA:
            montos["iva_item"] = money(monto * rate)
        elif tipo_dte == TipoDte.FACTURA:
            montos["iva_item"] = money(monto - monto / (1 + rate))
    return montos


def calcular_resumen(
    tipo_dte: str,
    lineas: Iterable[Dict[str, Decimal]],
    iva_retenido: Decimal = Decimal("0.00"),
    rate: Optional[Decimal] = None,
) -> Dict[str, Decimal]:
    rate = iva_rate() if rate is None else rate
    no_sujeto = exento = gravado = iva_lineas = Decimal("0.00")
    for linea in lineas:
        no_sujeto += linea["venta_no_sujeta"]
        exento += linea["venta_exenta"]
        gravado += linea["venta_gravada"]
        iva_lineas += linea["iva_item"]

    if tipo_dte in TIPOS_PRECIO_SIN_IVA:
        total_iva = money(gravado * rate)
        total = no_sujeto + exento + gravado + total_iva
    else:
        total_iva = iva_lineas
        total = no_sujeto + exento + gravado

    return {
        "total_no_sujeto": money(no_sujeto),
        "total_exento": money(exento),
        "total_gravado": money(gravado),
        "total_iva": money(total_iva),
        "iva_retenido": money(iva_retenido or 0),
        "total": money(total),
    }


def _siguiente_numero_control(sucursal: Sucursal, tipo_dte: str) -> str:
    Correlativo.objects.get_or_create(sucursal=sucursal, tipo_dte=tipo_dte)
    correlativo = Correlativo.objects.select_for_update().get(sucursal=sucursal, tipo_dte=tipo_dte)
    correlativo.ultimo_numero += 1
    correlativo.save(update_fields=["ultimo_numero"])
    return (
        f"DTE-{tipo_dte}-{sucursal.serie}-"
        f"{correlativo.ultimo_numero:015d}"
    )


# ============================================================
# Creación de borradores
# ============================================================


def crear_documento(
    sucursal: Sucursal,
    tipo_dte: str,
    lineas: List[Dict[str, Any]],
    receptor: Optional[Dict[str, Any]] = None,
    fecha_emision: Optional[date] = None,
    hora_emision: Optional[time] = None,
    observaciones: str = "",
    documento_original: Optional[FiscalDocument] = None,
    iva_retenido: Decimal = Decimal("0.00"),
    user=None,
) -> FiscalDocument:
    """
    Crea un DTE en BORRADOR con sus líneas, resumen, código de generación y
    número de control.

    lineas: dicts con descripcion, cantidad, precio_unitario y opcionalmente
    tipo_venta, codigo, tipo_item, uni_medida, monto_descuento,
    linea_original, motivo.
    """
    if tipo_dte not in TipoDte.values:
        raise ValidationError(f"Tipo de DTE no soportado: {tipo_dte}.", code="INVALID_TYPE")
    if not lineas:
        raise ValidationError("El documento debe tener al menos una línea.", code="LINES_REQUIRED")

    receptor = receptor or {}
    if tipo_dte in TIPOS_PRECIO_SIN_IVA and not (receptor.get("nit") and receptor.get("nrc")):
        raise ValidationError(
            "El receptor de un CCF o nota debe tener NIT y NRC.",
            code="RECEPTOR_REQUIRED",
        )
    if tipo_dte in (TipoDte.NOTA_CREDITO, TipoDte.NOTA_DEBITO) and documento_original is None:
        raise ValidationError(
            "Las notas de crédito y débito requieren un documento original.",
            code="ORIGINAL_REQUIRED",
        )

    rate = iva_rate()
    montos_lineas = []
    for idx, linea in enumerate(lineas, start=1):
        cantidad = Decimal(str(linea["cantidad"]))
        precio = Decimal(str(linea["precio_unitario"]))
        if cantidad <= 0:
            raise ValidationError(f"Línea {idx}: la cantidad debe ser mayor a cero.", code="INVALID_QUANTITY")
        if precio < 0:
            raise ValidationError(f"Línea {idx}: el precio no puede ser negativo.", code="INVALID_PRICE")
        montos_lineas.append(
            calcular_linea(
                tipo_dte,
                cantidad,
                precio,
                tipo_venta=linea.get("tipo_venta") or FiscalDocumentLine.TipoVenta.GRAVADO,
                monto_descuento=Decimal(str(linea.get("monto_descuento") or 0)),
                rate=rate,
            )
        )

    resumen = calcular_resumen(tipo_dte, montos_lineas, iva_retenido=iva_retenido, rate=rate)
    ahora = timezone.localtime()

    with transaction.atomic():
        documento = FiscalDocument.objects.create(
            codigo_generacion=nuevo_codigo_generacion(),
            numero_control=_siguiente_numero_control(sucursal, tipo_dte),
            tipo_dte=tipo_dte,
            version=VERSIONES_DTE[tipo_dte],
            ambiente=getattr(settings, "DTE_AMBIENTE", "00"),
            sucursal=sucursal,
            fecha_emision=fecha_emision or ahora.date(),
            hora_emision=hora_emision or ahora.time().replace(microsecond=0),
            receptor_tipo_documento=receptor.get("tipo_documento", ""),
            receptor_num_documento=receptor.get("num_documento", ""),
            receptor_nit=receptor.get("nit", ""),
            receptor_nrc=receptor.get("nrc", ""),
            receptor_nombre=receptor.get("nombre", ""),
            receptor_telefono=receptor.get("telefono", ""),
            receptor_correo=receptor.get("correo", ""),
            documento_original=documento_original,
            observaciones=observaciones or "",
            mensajes=[_mensaje("CREACION", "Borrador creado")],
            created_by=user if getattr(user, "is_authenticated", False) else None,
            **resumen,
        )

        FiscalDocumentLine.objects.bulk_create(
            [
                FiscalDocumentLine(
                    documento=documento,
                    num_item=idx,
                    tipo_item=linea.get("tipo_item", 2),
                    codigo=linea.get("codigo", ""),
                    descripcion=linea["descripcion"],
                    cantidad=Decimal(str(linea["cantidad"])),
                    uni_medida=linea.get("uni_medida", 59),
                    precio_unitario=Decimal(str(linea["precio_unitario"])),
                    monto_descuento=Decimal(str(linea.get("monto_descuento") or 0)),
                    tipo_venta=linea.get("tipo_venta") or FiscalDocumentLine.TipoVenta.GRAVADO,
                    linea_original=linea.get("linea_original"),
                    motivo=linea.get("motivo", ""),
                    **montos,
                )
                for idx, (linea, montos) in enumerate(zip(lineas, montos_lineas), start=1)
            ]
        )

    logger.info(
        "DTE %s creado tipo=%s numero_control=%s total=%s",
        documento.codigo_generacion,
        tipo_dte,
        documento.numero_control,
        documento.total,
    )
    return documento


# ============================================================
# Firma / transmisión
# ============================================================


def firmar_documento(
    documento: FiscalDocument | int,
    gateway: Optional[TaxAuthorityGateway] = None,
) -> FiscalDocument:
    """
    BORRADOR -> FIRMADO. Si el firmador falla el documento sigue en BORRADOR
    y se lanza SigningError (TransportFailure).
    """
    documento = cargar_documento(documento)
    if documento.estado != Estado.BORRADOR:
        raise InvalidState(
            f"Sólo se firman documentos en BORRADOR (estado actual: {documento.estado}).",
            estado_actual=documento.estado,
        )

    gateway = gateway or get_gateway()
    payload = build_dte_json(documento)
    try:
        firmado = gateway.sign(payload)
    except SigningError as exc:
        _registrar_error(documento, "FIRMA", exc.detail)
        raise

    return _update_document_status(
        documento,
        Estado.FIRMADO,
        mensajes=[_mensaje("FIRMA", "Documento firmado")],
        extra_updates={"dte_json": payload, "dte_firmado": firmado, "ultimo_error": ""},
    )


def _aplicar_resultado(documento: FiscalDocument, resultado: GatewayResult) -> FiscalDocument:
    if isinstance(resultado, Accepted):
        return _update_document_status(
            documento,
            Estado.PROCESADO,
            mensajes=[
                _mensaje(
                    "MH",
                    resultado.descripcion_msg or "Documento procesado",
                    sello=resultado.sello_recepcion,
                    codigo_msg=resultado.codigo_msg,
                )
            ],
            extra_updates={
                "sello_recepcion": resultado.sello_recepcion,
                "fecha_procesamiento": resultado.fecha_procesamiento or timezone.now(),
                "codigo_msg": resultado.codigo_msg,
                "descripcion_msg": resultado.descripcion_msg[:500],
                "observaciones_mh": resultado.observaciones,
                "ultimo_error": "",
            },
        )

    if isinstance(resultado, Rejected):
        _update_document_status(
            documento,
            Estado.RECHAZADO,
            mensajes=[
                _mensaje("MH", "Documento rechazado", codigo_msg=resultado.codigo_msg, observaciones=resultado.reasons)
            ],
            extra_updates={
                "codigo_msg": resultado.codigo_msg,
                "descripcion_msg": resultado.descripcion_msg[:500],
                "observaciones_mh": resultado.reasons,
                "ultimo_error": "; ".join(resultado.reasons),
            },
        )
        logger.warning("DTE %s rechazado por el MH: %s", documento.codigo_generacion, resultado.reasons)
        raise AuthorityRejected(
            resultado.reasons,
            detail=resultado.descripcion_msg or None,
            codigo_msg=resultado.codigo_msg or None,
        )

    error = resultado.error if isinstance(resultado, TransportError) else repr(resultado)
    contingencia = _update_document_status(
        documento,
        Estado.CONTINGENCIA,
        mensajes=[_mensaje("RED", "Sin respuesta del MH, documento en contingencia", error=error)],
        extra_updates={"ultimo_error": error},
    )
    logger.warning("DTE %s en contingencia: %s", documento.codigo_generacion, error)
    raise TransportFailure(
        f"No fue posible transmitir el documento al MH: {error}",
        documento_id=contingencia.pk,
        estado=contingencia.estado,
    )


def transmitir_documento(
    documento: FiscalDocument | int,
    gateway: Optional[TaxAuthorityGateway] = None,
) -> FiscalDocument:
    """
    FIRMADO / CONTINGENCIA / TRANSMITIDO -> TRANSMITIDO -> PROCESADO | RECHAZADO | CONTINGENCIA.

    El estado TRANSMITIDO se confirma antes de llamar al MH, de modo que un
    cliente que aborta no revierte el intento. Un documento PROCESADO se
    retorna sin cambios.
    """
    documento = cargar_documento(documento)
    if documento.estado == Estado.PROCESADO:
        return documento
    if documento.estado not in (Estado.FIRMADO, Estado.CONTINGENCIA, Estado.TRANSMITIDO):
        raise InvalidState(
            f"No se puede transmitir un documento en estado {documento.estado}.",
            estado_actual=documento.estado,
        )

    gateway = gateway or get_gateway()
    documento = _update_document_status(
        documento,
        Estado.TRANSMITIDO,
        mensajes=[_mensaje("ENVIO", "Transmitiendo al MH", intento=documento.intentos_transmision + 1)],
        extra_updates={"intentos_transmision": documento.intentos_transmision + 1},
    )

    try:
        resultado = gateway.transmit(
            KIND_DTE,
            documento.dte_firmado,
            codigo_generacion=documento.codigo_generacion,
            tipo_dte=documento.tipo_dte,
            version=documento.version,
            ambiente=documento.ambiente,
        )
    except Exception as exc:  # noqa: BLE001
        logger.exception("Error inesperado transmitiendo DTE %s: %s", documento.codigo_generacion, exc)
        resultado = TransportError(error=str(exc))

    return _aplicar_resultado(documento, resultado)


def emitir_documento(
    documento: FiscalDocument | int,
    gateway: Optional[TaxAuthorityGateway] = None,
) -> FiscalDocument:
    """Firma (si está en BORRADOR) y transmite."""
    gateway = gateway or get_gateway()
    documento = cargar_documento(documento)
    if documento.estado == Estado.BORRADOR:
        documento = firmar_documento(documento, gateway=gateway)
    return transmitir_documento(documento, gateway=gateway)


def reenviar_contingencia(
    documento: FiscalDocument | int,
    gateway: Optional[TaxAuthorityGateway] = None,
) -> FiscalDocument:
    documento = cargar_documento(documento)
    if documento.estado != Estado.CONTINGENCIA:
        raise InvalidState(
            f"Sólo se reenvían documentos en CONTINGENCIA (estado actual: {documento.estado}).",
            estado_actual=documento.estado,
        )
    return transmitir_documento(documento, gateway=gateway)


def reenviar_contingencias_pendientes(
    limite: Optional[int] = None,
    gateway: Optional[TaxAuthorityGateway] = None,
) -> Dict[str, int]:
    """
    Reenvía los documentos en CONTINGENCIA (más antiguos primero).
    Retorna conteos por resultado.
    """
    gateway = gateway or get_gateway()
    pendientes = FiscalDocument.objects.filter(estado=Estado.CONTINGENCIA).order_by("updated_at")
    if limite:
        pendientes = pendientes[:limite]

    resumen = {"procesados": 0, "rechazados": 0, "fallidos": 0}
    for doc_id in list(pendientes.values_list("id", flat=True)):
        try:
            reenviar_contingencia(doc_id, gateway=gateway)
            resumen["procesados"] += 1
        except AuthorityRejected:
            resumen["rechazados"] += 1
        except (TransportFailure, Conflict, InvalidState) as exc:
            logger.warning("Reenvío de contingencia %s sin éxito: %s", doc_id, exc)
            resumen["fallidos"] += 1

    logger.info("Reenvío de contingencias: %s", resumen)
    return resumen

# dte/services/builders.py
# -*- coding: utf-8 -*-
"""
Construcción de los JSON que se firman y transmiten al MH:

- build_dte_json(documento): identificacion / emisor / receptor /
  cuerpoDocumento / resumen (+ documentoRelacionado para notas).
- build_evento_anulacion(evento): evento de invalidación versión 2.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional

from django.conf import settings

from dte.models import FiscalDocument, InvalidationEvent, Sucursal, TipoDte

VERSION_EVENTO_ANULACION = 2
IVA_CODE = "20"

# Tipos cuyo precio unitario se expresa sin IVA
TIPOS_PRECIO_SIN_IVA = {TipoDte.CCF, TipoDte.NOTA_CREDITO, TipoDte.NOTA_DEBITO}


def _money(value: Optional[Decimal]) -> float:
    return float((value or Decimal("0")).quantize(Decimal("0.01")))


def _fecha(d) -> Optional[str]:
    return d.strftime("%Y-%m-%d") if d else None


def _hora(t) -> Optional[str]:
    return t.strftime("%H:%M:%S") if t else None


def _emisor(sucursal: Sucursal) -> Dict[str, Any]:
    return {
        "nit": getattr(settings, "DTE_EMISOR_NIT", ""),
        "nrc": getattr(settings, "DTE_EMISOR_NRC", ""),
        "nombre": getattr(settings, "DTE_EMISOR_NOMBRE", ""),
        "tipoEstablecimiento": sucursal.tipo_establecimiento,
        "codEstableMH": sucursal.cod_estable_mh,
        "codEstable": sucursal.cod_estable,
        "codPuntoVentaMH": sucursal.cod_punto_venta_mh,
        "codPuntoVenta": sucursal.cod_punto_venta,
        "telefono": sucursal.telefono or getattr(settings, "DTE_EMISOR_TELEFONO", ""),
        "correo": sucursal.correo or getattr(settings, "DTE_EMISOR_CORREO", ""),
    }


def _receptor(doc: FiscalDocument) -> Optional[Dict[str, Any]]:
    if not (doc.receptor_nombre or doc.receptor_num_documento or doc.receptor_nit):
        return None
    receptor: Dict[str, Any] = {
        "nombre": doc.receptor_nombre or None,
        "telefono": doc.receptor_telefono or None,
        "correo": doc.receptor_correo or None,
    }
    if doc.tipo_dte in TIPOS_PRECIO_SIN_IVA:
        receptor["nit"] = doc.receptor_nit or None
        receptor["nrc"] = doc.receptor_nrc or None
    else:
        receptor["tipoDocumento"] = doc.receptor_tipo_documento or None
        receptor["numDocumento"] = doc.receptor_num_documento or None
    return receptor


def _cuerpo(doc: FiscalDocument) -> List[Dict[str, Any]]:
    items: List[Dict[str, Any]] = []
    for linea in doc.lineas.all().order_by("num_item"):
        item: Dict[str, Any] = {
            "numItem": linea.num_item,
            "tipoItem": linea.tipo_item,
            "codigo": linea.codigo or None,
            "descripcion": linea.descripcion,
            "cantidad": float(linea.cantidad),
            "uniMedida": linea.uni_medida,
            "precioUni": float(linea.precio_unitario),
            "montoDescu": _money(linea.monto_descuento),
            "ventaNoSuj": _money(linea.venta_no_sujeta),
            "ventaExenta": _money(linea.venta_exenta),
            "ventaGravada": _money(linea.venta_gravada),
        }
        if doc.tipo_dte in TIPOS_PRECIO_SIN_IVA:
            item["tributos"] = [IVA_CODE] if linea.venta_gravada else None
        else:
            item["ivaItem"] = _money(linea.iva_item)
        if doc.es_nota and doc.documento_original_id:
            item["numeroDocumento"] = doc.documento_original.codigo_generacion
        items.append(item)
    return items


def _resumen(doc: FiscalDocument) -> Dict[str, Any]:
    sub_total = doc.total_no_sujeto + doc.total_exento + doc.total_gravado
    resumen: Dict[str, Any] = {
        "totalNoSuj": _money(doc.total_no_sujeto),
        "totalExenta": _money(doc.total_exento),
        "totalGravada": _money(doc.total_gravado),
        "subTotalVentas": _money(sub_total),
        "subTotal": _money(sub_total),
        "ivaRete1": _money(doc.iva_retenido),
        "montoTotalOperacion": _money(doc.total),
        "totalPagar": _money(doc.total - doc.iva_retenido),
    }
    if doc.tipo_dte in TIPOS_PRECIO_SIN_IVA:
        resumen["tributos"] = (
            [{"codigo": IVA_CODE, "descripcion": "Impuesto al Valor Agregado 13%", "valor": _money(doc.total_iva)}]
            if doc.total_iva
            else None
        )
    else:
        resumen["totalIva"] = _money(doc.total_iva)
    return resumen


def build_dte_json(doc: FiscalDocument, contingencia: bool = False) -> Dict[str, Any]:
    dte: Dict[str, Any] = {
        "identificacion": {
            "version": doc.version,
            "ambiente": doc.ambiente,
            "tipoDte": doc.tipo_dte,
            "numeroControl": doc.numero_control,
            "codigoGeneracion": doc.codigo_generacion,
            "tipoModelo": 2 if contingencia else 1,
            "tipoOperacion": 2 if contingencia else 1,
            "tipoContingencia": None,
            "motivoContin": None,
            "fecEmi": _fecha(doc.fecha_emision),
            "horEmi": _hora(doc.hora_emision),
            "tipoMoneda": doc.moneda,
        },
        "emisor": _emisor(doc.sucursal),
        "receptor": _receptor(doc),
        "cuerpoDocumento": _cuerpo(doc),
        "resumen": _resumen(doc),
        "extension": {"observaciones": doc.observaciones} if doc.observaciones else None,
        "apendice": None,
    }
    if doc.es_nota and doc.documento_original_id:
        original = FiscalDocument.objects.get_original(doc)
        dte["documentoRelacionado"] = [
            {
                "tipoDocumento": original.tipo_dte,
                "tipoGeneracion": 2,  # 2 = documento electrónico
                "numeroDocumento": original.codigo_generacion,
                "fechaEmision": _fecha(original.fecha_emision),
            }
        ]
    return dte


def build_evento_anulacion(evento: InvalidationEvent) -> Dict[str, Any]:
    doc = evento.documento
    reemplazo_codigo = None
    if evento.documento_reemplazo_id:
        reemplazo_codigo = evento.documento_reemplazo.codigo_generacion

    return {
        "identificacion": {
            "version": VERSION_EVENTO_ANULACION,
            "ambiente": doc.ambiente,
            "codigoGeneracion": evento.codigo_generacion,
            "fecAnula": _fecha(evento.fecha_anulacion),
            "horAnula": _hora(evento.hora_anulacion),
        },
        "emisor": {
            "nit": getattr(settings, "DTE_EMISOR_NIT", ""),
            "nombre": getattr(settings, "DTE_EMISOR_NOMBRE", ""),
            "tipoEstablecimiento": doc.sucursal.tipo_establecimiento,
            "nomEstablecimiento": doc.sucursal.nombre,
            "codEstableMH": doc.sucursal.cod_estable_mh,
            "codEstable": doc.sucursal.cod_estable,
            "codPuntoVentaMH": doc.sucursal.cod_punto_venta_mh,
            "codPuntoVenta": doc.sucursal.cod_punto_venta,
            "telefono": doc.sucursal.telefono or getattr(settings, "DTE_EMISOR_TELEFONO", ""),
            "correo": doc.sucursal.correo or getattr(settings, "DTE_EMISOR_CORREO", ""),
        },
        "documento": {
            "tipoDte": doc.tipo_dte,
            "codigoGeneracion": doc.codigo_generacion,
            "selloRecibido": doc.sello_recepcion,
            "numeroControl": doc.numero_control,
            "fecEmi": _fecha(doc.fecha_emision),
            "montoIva": _money(doc.total_iva) if doc.total_iva else None,
            "codigoGeneracionR": reemplazo_codigo,
            "tipoDocumento": doc.receptor_tipo_documento or ("36" if doc.receptor_nit else None),
            "numDocumento": doc.receptor_num_documento or doc.receptor_nit or None,
            "nombre": doc.receptor_nombre or None,
            "telefono": doc.receptor_telefono or None,
            "correo": doc.receptor_correo or None,
        },
        "motivo": {
            "tipoAnulacion": evento.tipo_anulacion,
            "motivoAnulacion": evento.motivo or None,
            "nombreResponsable": evento.responsable_nombre,
            "tipDocResponsable": evento.responsable_tipo_doc,
            "numDocResponsable": evento.responsable_num_doc,
            "nombreSolicita": evento.solicitante_nombre,
            "tipDocSolicita": evento.solicitante_tipo_doc,
            "numDocSolicita": evento.solicitante_num_doc,
        },
    }

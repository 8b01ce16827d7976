# dte/services/gateway.py
# -*- coding: utf-8 -*-
"""
Pasarela hacia la autoridad tributaria.

Capacidades:
- sign(payload) -> JWS firmado por el servicio firmador.
- transmit(kind, signed, ...) -> Accepted | Rejected | TransportError.

El resultado de transmit NUNCA es una excepción: el workflow decide qué
hacer con cada variante. Sólo sign() lanza SigningError.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from django.conf import settings
from django.utils import timezone
from django.utils.module_loading import import_string

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from dte.exceptions import SigningError

logger = logging.getLogger("dte.mh")


# =========================
# Resultados normalizados
# =========================


@dataclass(frozen=True)
class Accepted:
    sello_recepcion: str
    fecha_procesamiento: Optional[datetime]
    codigo_msg: str = ""
    descripcion_msg: str = ""
    observaciones: List[str] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Rejected:
    reasons: List[str]
    codigo_msg: str = ""
    descripcion_msg: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TransportError:
    error: str
    raw: Dict[str, Any] = field(default_factory=dict)


GatewayResult = Union[Accepted, Rejected, TransportError]

KIND_DTE = "dte"
KIND_ANULACION = "anulacion"


class TaxAuthorityGateway:
    """Interfaz que usan los servicios. Las pruebas inyectan una implementación falsa."""

    def sign(self, payload: Dict[str, Any]) -> str:
        raise NotImplementedError

    def transmit(
        self,
        kind: str,
        signed: str,
        *,
        codigo_generacion: str,
        tipo_dte: Optional[str] = None,
        version: int = 1,
        ambiente: Optional[str] = None,
    ) -> GatewayResult:
        raise NotImplementedError


# =========================
# Configuración (tomada desde settings)
# =========================

MH_TEST_URL = getattr(settings, "DTE_MH_TEST_URL", "https://apitest.dtes.mh.gob.sv")
MH_PROD_URL = getattr(settings, "DTE_MH_PROD_URL", "https://api.dtes.mh.gob.sv")

AMBIENTE_PRUEBAS = "00"
AMBIENTE_PRODUCCION = "01"

# El token del MH dura 24h en pruebas y 48h en producción; se renueva antes.
TOKEN_TTL_SEGUNDOS = 23 * 60 * 60

_token_cache: Dict[str, Tuple[str, float]] = {}
_token_lock = threading.Lock()


def _parse_fh_procesamiento(value: Optional[str]) -> Optional[datetime]:
    """'DD/MM/YYYY HH:MM:SS' (hora local de El Salvador) -> datetime aware."""
    if not value:
        return None
    try:
        naive = datetime.strptime(value, "%d/%m/%Y %H:%M:%S")
    except (TypeError, ValueError):
        logger.warning("fhProcesamiento con formato inesperado: %s", value)
        return None
    if settings.USE_TZ:
        return timezone.make_aware(naive)
    return naive


def parse_mh_response(data: Dict[str, Any]) -> GatewayResult:
    """
    Normaliza el cuerpo JSON de recepción del MH.
    Las observaciones de un rechazo se conservan textualmente.
    """
    estado = (data.get("estado") or "").upper()
    observaciones = [str(o) for o in (data.get("observaciones") or [])]
    codigo_msg = str(data.get("codigoMsg") or "")
    descripcion_msg = str(data.get("descripcionMsg") or "")

    if estado == "PROCESADO":
        return Accepted(
            sello_recepcion=data.get("selloRecibido") or "",
            fecha_procesamiento=_parse_fh_procesamiento(data.get("fhProcesamiento")),
            codigo_msg=codigo_msg,
            descripcion_msg=descripcion_msg,
            observaciones=observaciones,
            raw=data,
        )
    if estado == "RECHAZADO":
        reasons = observaciones or [descripcion_msg or "Documento rechazado por el MH."]
        return Rejected(
            reasons=reasons,
            codigo_msg=codigo_msg,
            descripcion_msg=descripcion_msg,
            raw=data,
        )
    return TransportError(error=f"Respuesta del MH sin estado reconocible: {estado or '-'}", raw=data)


class MhGateway(TaxAuthorityGateway):
    """
    Implementación HTTP: firmador local (API Firmador) + API de recepción del MH.

    - Session con Retry sólo ante errores de conexión (nunca ante RECHAZADO).
    - Timeout (connect, read) desde DTE_GATEWAY_TIMEOUT.
    - Token bearer del MH cacheado por ambiente.
    """

    def __init__(
        self,
        ambiente: Optional[str] = None,
        timeout: Optional[Tuple[float, float]] = None,
        session: Optional[requests.Session] = None,
    ):
        self.ambiente = ambiente or getattr(settings, "DTE_AMBIENTE", AMBIENTE_PRUEBAS)
        self.timeout = timeout or getattr(settings, "DTE_GATEWAY_TIMEOUT", (4, 8))
        self.base_url = MH_PROD_URL if self.ambiente == AMBIENTE_PRODUCCION else MH_TEST_URL
        self.firmador_url = getattr(settings, "DTE_FIRMADOR_URL", "http://localhost:8113").rstrip("/")

        retries = getattr(settings, "DTE_RETRY_MAX", 2)
        if session is None:
            session = requests.Session()
            session.headers.update({"User-Agent": "DteEngine/1.0 (Python/requests)"})
            retry = Retry(
                total=retries,
                connect=retries,
                read=0,
                status=0,
                backoff_factor=getattr(settings, "DTE_RETRY_BACKOFF", 1),
                allowed_methods=["GET", "POST"],
                raise_on_status=False,
            )
            adapter = HTTPAdapter(max_retries=retry)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self.session = session

        logger.info(
            "Inicializando MhGateway ambiente=%s [MH=%s, firmador=%s, timeout=%s, retries=%s]",
            self.ambiente,
            self.base_url,
            self.firmador_url,
            self.timeout,
            retries,
        )

    # -------------------------
    # Firma
    # -------------------------

    def sign(self, payload: Dict[str, Any]) -> str:
        body = {
            "nit": getattr(settings, "DTE_EMISOR_NIT", ""),
            "activo": True,
            "passwordPri": getattr(settings, "DTE_FIRMADOR_PASSWORD", ""),
            "dteJson": payload,
        }
        try:
            resp = self.session.post(
                f"{self.firmador_url}/firmardocumento/",
                json=body,
                timeout=self.timeout,
            )
            data = resp.json()
        except requests.RequestException as exc:
            logger.exception("Error de red/timeout al llamar al firmador: %s", exc)
            raise SigningError(f"Firmador no disponible: {exc}")
        except ValueError as exc:
            logger.error("Respuesta no JSON del firmador (HTTP %s)", resp.status_code)
            raise SigningError(f"Respuesta inválida del firmador: {exc}")

        if data.get("status") != "OK" or not data.get("body"):
            detalle = data.get("body") or data
            logger.error("Firmador devolvió error: %s", detalle)
            raise SigningError(f"El firmador devolvió error: {detalle}")

        return data["body"]

    # -------------------------
    # Autenticación MH
    # -------------------------

    def _get_token(self, force: bool = False) -> str:
        with _token_lock:
            cached = _token_cache.get(self.ambiente)
            if cached and not force and cached[1] > time.monotonic():
                return cached[0]

            resp = self.session.post(
                f"{self.base_url}/seguridad/auth",
                data={
                    "user": getattr(settings, "DTE_MH_USER", ""),
                    "pwd": getattr(settings, "DTE_MH_PASSWORD", ""),
                },
                timeout=self.timeout,
            )
            try:
                data = resp.json()
            except ValueError:
                raise requests.RequestException(
                    f"Respuesta no JSON de autenticación MH (HTTP {resp.status_code})"
                )
            token = (data.get("body") or {}).get("token") if data.get("status") == "OK" else None
            if not token:
                raise requests.RequestException(
                    f"Autenticación MH fallida: {data.get('body') or data}"
                )

            _token_cache[self.ambiente] = (token, time.monotonic() + TOKEN_TTL_SEGUNDOS)
            logger.info("Token MH renovado para ambiente=%s", self.ambiente)
            return token

    # -------------------------
    # Transmisión
    # -------------------------

    def transmit(
        self,
        kind: str,
        signed: str,
        *,
        codigo_generacion: str,
        tipo_dte: Optional[str] = None,
        version: int = 1,
        ambiente: Optional[str] = None,
    ) -> GatewayResult:
        ambiente = ambiente or self.ambiente
        if kind == KIND_ANULACION:
            url = f"{self.base_url}/fesv/anulardte"
            body: Dict[str, Any] = {
                "ambiente": ambiente,
                "idEnvio": 1,
                "version": version,
                "documento": signed,
            }
        else:
            url = f"{self.base_url}/fesv/recepciondte"
            body = {
                "ambiente": ambiente,
                "idEnvio": 1,
                "version": version,
                "tipoDte": tipo_dte,
                "documento": signed,
                "codigoGeneracion": codigo_generacion,
            }

        try:
            resp = self._post_autenticado(url, body)
        except requests.RequestException as exc:
            # Problemas de red / timeout: nunca es un rechazo
            logger.exception("Error de red/timeout al transmitir %s %s: %s", kind, codigo_generacion, exc)
            return TransportError(error=str(exc))

        if resp.status_code >= 500:
            logger.error("MH respondió HTTP %s para %s %s", resp.status_code, kind, codigo_generacion)
            return TransportError(error=f"HTTP {resp.status_code}", raw={"body": resp.text[:2000]})

        try:
            data = resp.json()
        except ValueError:
            logger.error("Respuesta no JSON del MH (HTTP %s) para %s", resp.status_code, codigo_generacion)
            return TransportError(error=f"Respuesta no JSON (HTTP {resp.status_code})")

        result = parse_mh_response(data)
        logger.info(
            "Respuesta MH %s codigoGeneracion=%s estado=%s codigoMsg=%s",
            kind,
            codigo_generacion,
            data.get("estado"),
            data.get("codigoMsg"),
        )
        return result

    def _post_autenticado(self, url: str, body: Dict[str, Any]) -> requests.Response:
        token = self._get_token()
        resp = self.session.post(
            url,
            json=body,
            headers={"Authorization": token},
            timeout=self.timeout,
        )
        if resp.status_code in (401, 403):
            # Token vencido o revocado: se renueva una sola vez
            token = self._get_token(force=True)
            resp = self.session.post(
                url,
                json=body,
                headers={"Authorization": token},
                timeout=self.timeout,
            )
        return resp


def get_gateway() -> TaxAuthorityGateway:
    """
    Factory usada por los servicios. La clase se configura con DTE_GATEWAY_CLASS.
    """
    dotted = getattr(settings, "DTE_GATEWAY_CLASS", "dte.services.gateway.MhGateway")
    return import_string(dotted)()

# dte/models.py
from __future__ import annotations

from decimal import Decimal

from django.conf import settings
from django.db import models
from django.db.models import Q

from dte.exceptions import InvalidState, NotFound


class Sucursal(models.Model):
    """
    Establecimiento / punto de venta registrado ante el MH.
    Sus códigos forman parte del número de control de cada DTE.
    """

    nombre = models.CharField(max_length=255)
    tipo_establecimiento = models.CharField(
        max_length=2,
        default="02",
        help_text="Catálogo MH CAT-009: 01 sucursal, 02 casa matriz, 04 bodega, 07 patio.",
    )
    cod_estable_mh = models.CharField(
        max_length=4,
        default="M001",
        help_text="Código de establecimiento asignado por el MH.",
    )
    cod_estable = models.CharField(
        max_length=4,
        default="0001",
        help_text="Código interno de establecimiento (4 caracteres, ej. '0001').",
    )
    cod_punto_venta_mh = models.CharField(max_length=4, default="P001")
    cod_punto_venta = models.CharField(
        max_length=4,
        default="0001",
        help_text="Código interno de punto de venta (4 caracteres, ej. '0001').",
    )
    telefono = models.CharField(max_length=32, blank=True)
    correo = models.EmailField(blank=True)
    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Sucursal"
        verbose_name_plural = "Sucursales"
        unique_together = (("cod_estable", "cod_punto_venta"),)

    def __str__(self) -> str:
        return f"{self.cod_estable}{self.cod_punto_venta} - {self.nombre}"

    @property
    def serie(self) -> str:
        """
        Serie concatenada establecimiento + punto de venta (ej. '00010001').
        """
        return f"{self.cod_estable}{self.cod_punto_venta}"


class Correlativo(models.Model):
    """
    Contador de números de control por sucursal y tipo de DTE.
    Se incrementa siempre bajo select_for_update.
    """

    sucursal = models.ForeignKey(
        Sucursal,
        related_name="correlativos",
        on_delete=models.CASCADE,
    )
    tipo_dte = models.CharField(max_length=2)
    ultimo_numero = models.PositiveBigIntegerField(default=0)

    class Meta:
        verbose_name = "Correlativo"
        verbose_name_plural = "Correlativos"
        unique_together = (("sucursal", "tipo_dte"),)

    def __str__(self) -> str:
        return f"{self.sucursal.serie} - {self.tipo_dte}: {self.ultimo_numero}"


class TipoDte(models.TextChoices):
    FACTURA = "01", "Factura"
    CCF = "03", "Comprobante de crédito fiscal"
    NOTA_CREDITO = "05", "Nota de crédito"
    NOTA_DEBITO = "06", "Nota de débito"
    COMPROBANTE_RETENCION = "07", "Comprobante de retención"
    FACTURA_EXPORTACION = "11", "Factura de exportación"
    SUJETO_EXCLUIDO = "14", "Factura de sujeto excluido"


# Versión del esquema JSON del MH por tipo de documento
VERSIONES_DTE = {
    TipoDte.FACTURA: 1,
    TipoDte.CCF: 3,
    TipoDte.NOTA_CREDITO: 3,
    TipoDte.NOTA_DEBITO: 3,
    TipoDte.COMPROBANTE_RETENCION: 1,
    TipoDte.FACTURA_EXPORTACION: 1,
    TipoDte.SUJETO_EXCLUIDO: 1,
}

# Campos del resumen monetario que quedan congelados al llegar a PROCESADO
CAMPOS_RESUMEN = (
    "total_no_sujeto",
    "total_exento",
    "total_gravado",
    "total_iva",
    "iva_retenido",
    "total",
    "moneda",
)


class FiscalDocumentQuerySet(models.QuerySet):
    def processed(self):
        return self.filter(estado=FiscalDocument.Estado.PROCESADO)

    def get_by_generation_code(self, codigo_generacion: str) -> "FiscalDocument":
        try:
            return self.get(codigo_generacion=(codigo_generacion or "").strip().upper())
        except FiscalDocument.DoesNotExist:
            raise NotFound(f"No existe un DTE con código de generación {codigo_generacion}.")

    def get_original(self, documento: "FiscalDocument") -> "FiscalDocument | None":
        if not documento.documento_original_id:
            return None
        return self.get(pk=documento.documento_original_id)


class FiscalDocument(models.Model):
    """
    Documento Tributario Electrónico (factura, CCF, notas, exportación,
    sujeto excluido) y su estado frente al Ministerio de Hacienda.
    """

    class Estado(models.TextChoices):
        BORRADOR = "BORRADOR", "Borrador"
        FIRMADO = "FIRMADO", "Firmado"
        TRANSMITIDO = "TRANSMITIDO", "Transmitido al MH"
        PROCESADO = "PROCESADO", "Procesado por el MH"
        RECHAZADO = "RECHAZADO", "Rechazado por el MH"
        CONTINGENCIA = "CONTINGENCIA", "En contingencia"
        INVALIDADO = "INVALIDADO", "Invalidado"

    Tipo = TipoDte

    # Identidad
    codigo_generacion = models.CharField(
        max_length=36,
        unique=True,
        help_text="UUID v4 en mayúsculas asignado al crear el documento.",
    )
    numero_control = models.CharField(
        max_length=31,
        unique=True,
        help_text="Formato DTE-TT-EEEEPPPP-NNNNNNNNNNNNNNN.",
    )
    tipo_dte = models.CharField(max_length=2, choices=TipoDte.choices, db_index=True)
    version = models.PositiveSmallIntegerField(default=1)
    ambiente = models.CharField(max_length=2, default="00")
    sucursal = models.ForeignKey(
        Sucursal,
        related_name="documentos",
        on_delete=models.PROTECT,
    )

    estado = models.CharField(
        max_length=20,
        choices=Estado.choices,
        default=Estado.BORRADOR,
        db_index=True,
    )

    fecha_emision = models.DateField(db_index=True)
    hora_emision = models.TimeField(null=True, blank=True)

    # Receptor (snapshot al momento de emitir)
    receptor_tipo_documento = models.CharField(
        max_length=2,
        blank=True,
        help_text="Catálogo MH CAT-022: 36 NIT, 13 DUI, 03 pasaporte, 37 otro.",
    )
    receptor_num_documento = models.CharField(max_length=25, blank=True)
    receptor_nit = models.CharField(max_length=17, blank=True)
    receptor_nrc = models.CharField(max_length=10, blank=True)
    receptor_nombre = models.CharField(max_length=255, blank=True)
    receptor_telefono = models.CharField(max_length=32, blank=True)
    receptor_correo = models.EmailField(blank=True)

    # Resumen monetario
    total_no_sujeto = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    total_exento = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    total_gravado = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    total_iva = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    iva_retenido = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    total = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    moneda = models.CharField(max_length=3, default="USD")

    # Vínculos
    documento_original = models.ForeignKey(
        "self",
        related_name="notas",
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        help_text="CCF / comprobante de retención al que ajusta una nota de crédito o débito.",
    )
    documento_reemplazo = models.ForeignKey(
        "self",
        related_name="reemplaza_a",
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        help_text="Documento que sustituye a este cuando fue invalidado por error en la información.",
    )

    # Respuesta del MH
    sello_recepcion = models.CharField(max_length=64, blank=True)
    fecha_procesamiento = models.DateTimeField(null=True, blank=True)
    codigo_msg = models.CharField(max_length=10, blank=True)
    descripcion_msg = models.CharField(max_length=500, blank=True)
    observaciones_mh = models.JSONField(default=list, blank=True)

    # JSON / firma
    dte_json = models.JSONField(null=True, blank=True)
    dte_firmado = models.TextField(blank=True)

    observaciones = models.TextField(blank=True)

    # Bitácora de mensajes del flujo (JSON serializable)
    mensajes = models.JSONField(default=list, blank=True)
    intentos_transmision = models.PositiveIntegerField(default=0)
    ultimo_error = models.TextField(blank=True)

    # Auditoría
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        related_name="dte_documentos_creados",
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
    )

    objects = FiscalDocumentQuerySet.as_manager()

    class Meta:
        verbose_name = "Documento tributario electrónico"
        verbose_name_plural = "Documentos tributarios electrónicos"
        permissions = [
            ("anular_fiscaldocument", "Puede invalidar documentos tributarios electrónicos"),
            ("emitir_fiscaldocument", "Puede emitir documentos tributarios electrónicos"),
        ]
        indexes = [
            # Libros de IVA: tipo + estado + rango de fechas
            models.Index(
                fields=["tipo_dte", "estado", "fecha_emision"],
                name="dte_tipo_estado_fecha_idx",
            ),
            models.Index(
                fields=["sucursal", "fecha_emision"],
                name="dte_suc_fecha_idx",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.get_tipo_dte_display()} {self.numero_control} ({self.estado})"

    # -------------------------
    # Resumen inmutable
    # -------------------------

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        instance._snapshot_resumen()
        return instance

    def _snapshot_resumen(self) -> None:
        self._estado_cargado = self.estado
        self._resumen_cargado = self.resumen_monetario()

    def resumen_monetario(self) -> tuple:
        return tuple(getattr(self, campo, None) for campo in CAMPOS_RESUMEN)

    def save(self, *args, **kwargs):
        estado_cargado = getattr(self, "_estado_cargado", None)
        congelado = estado_cargado in (self.Estado.PROCESADO, self.Estado.INVALIDADO)
        if congelado and self.resumen_monetario() != self._resumen_cargado:
            raise InvalidState(
                "El resumen monetario de un documento procesado por el MH no puede modificarse."
            )
        super().save(*args, **kwargs)
        self._snapshot_resumen()

    # -------------------------
    # Helpers
    # -------------------------

    @property
    def es_nota(self) -> bool:
        return self.tipo_dte in (TipoDte.NOTA_CREDITO, TipoDte.NOTA_DEBITO)

    @property
    def anulacion_activa(self) -> "InvalidationEvent | None":
        return self.anulaciones.exclude(estado=InvalidationEvent.Estado.RECHAZADA).first()


class FiscalDocumentLine(models.Model):
    """
    Línea de detalle (cuerpoDocumento) de un DTE.
    Para 03/05/06 el precio unitario es sin IVA.
    """

    class TipoVenta(models.TextChoices):
        GRAVADO = "GRAVADO", "Gravado"
        EXENTO = "EXENTO", "Exento"
        NOSUJETO = "NOSUJETO", "No sujeto"

    documento = models.ForeignKey(
        FiscalDocument,
        related_name="lineas",
        on_delete=models.CASCADE,
    )
    num_item = models.PositiveIntegerField()
    tipo_item = models.PositiveSmallIntegerField(
        default=2,
        help_text="Catálogo MH CAT-011: 1 bienes, 2 servicios, 3 ambos.",
    )
    codigo = models.CharField(max_length=25, blank=True)
    descripcion = models.CharField(max_length=1000)
    cantidad = models.DecimalField(max_digits=14, decimal_places=4)
    uni_medida = models.PositiveSmallIntegerField(default=59, help_text="59 = Unidad.")
    precio_unitario = models.DecimalField(max_digits=14, decimal_places=6)
    monto_descuento = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    tipo_venta = models.CharField(
        max_length=10,
        choices=TipoVenta.choices,
        default=TipoVenta.GRAVADO,
    )

    venta_no_sujeta = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    venta_exenta = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    venta_gravada = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    iva_item = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))

    # Sólo para notas de crédito / débito
    linea_original = models.ForeignKey(
        "self",
        related_name="lineas_derivadas",
        null=True,
        blank=True,
        on_delete=models.PROTECT,
    )
    motivo = models.CharField(max_length=500, blank=True)

    class Meta:
        verbose_name = "Línea de DTE"
        verbose_name_plural = "Líneas de DTE"
        ordering = ["documento_id", "num_item"]
        unique_together = (("documento", "num_item"),)

    def __str__(self) -> str:
        return f"{self.descripcion} x {self.cantidad}"

    @property
    def monto_linea(self) -> Decimal:
        return self.venta_no_sujeta + self.venta_exenta + self.venta_gravada


class InvalidationEvent(models.Model):
    """
    Evento de invalidación (anulación) de un DTE procesado.
    Un documento admite a lo sumo un evento que no esté RECHAZADO.
    """

    class Estado(models.TextChoices):
        PENDIENTE = "PENDIENTE", "Pendiente"
        FIRMADA = "FIRMADA", "Firmada"
        TRANSMITIDA = "TRANSMITIDA", "Transmitida al MH"
        PROCESADA = "PROCESADA", "Procesada por el MH"
        RECHAZADA = "RECHAZADA", "Rechazada por el MH"

    class TipoAnulacion(models.IntegerChoices):
        ERROR_INFORMACION = 1, "Error en la información del documento"
        RESCINDIR_OPERACION = 2, "Rescindir de la operación realizada"
        OTRO = 3, "Otro"

    codigo_generacion = models.CharField(max_length=36, unique=True)
    documento = models.ForeignKey(
        FiscalDocument,
        related_name="anulaciones",
        on_delete=models.PROTECT,
    )
    documento_reemplazo = models.ForeignKey(
        FiscalDocument,
        related_name="anulaciones_que_reemplaza",
        null=True,
        blank=True,
        on_delete=models.PROTECT,
    )

    tipo_anulacion = models.PositiveSmallIntegerField(choices=TipoAnulacion.choices)
    motivo = models.CharField(max_length=250, blank=True)

    # Responsable (emisor) y solicitante (receptor)
    responsable_nombre = models.CharField(max_length=100)
    responsable_tipo_doc = models.CharField(max_length=2, default="13")
    responsable_num_doc = models.CharField(max_length=25)
    solicitante_nombre = models.CharField(max_length=100)
    solicitante_tipo_doc = models.CharField(max_length=2, default="13")
    solicitante_num_doc = models.CharField(max_length=25)

    estado = models.CharField(
        max_length=20,
        choices=Estado.choices,
        default=Estado.PENDIENTE,
        db_index=True,
    )

    fecha_anulacion = models.DateField()
    hora_anulacion = models.TimeField()

    # Respuesta del MH
    sello_recepcion = models.CharField(max_length=64, blank=True)
    fecha_procesamiento = models.DateTimeField(null=True, blank=True)
    codigo_msg = models.CharField(max_length=10, blank=True)
    descripcion_msg = models.CharField(max_length=500, blank=True)
    observaciones_mh = models.JSONField(default=list, blank=True)

    evento_json = models.JSONField(null=True, blank=True)
    evento_firmado = models.TextField(blank=True)

    mensajes = models.JSONField(default=list, blank=True)
    intentos_transmision = models.PositiveIntegerField(default=0)
    ultimo_error = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        related_name="dte_anulaciones_creadas",
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
    )

    class Meta:
        verbose_name = "Evento de invalidación"
        verbose_name_plural = "Eventos de invalidación"
        ordering = ["-created_at"]
        constraints = [
            # Una sola anulación activa (no rechazada) por documento
            models.UniqueConstraint(
                fields=["documento"],
                condition=~Q(estado="RECHAZADA"),
                name="dte_anulacion_activa_unica",
            ),
        ]

    def __str__(self) -> str:
        return f"Anulación {self.codigo_generacion} de {self.documento_id} ({self.estado})"

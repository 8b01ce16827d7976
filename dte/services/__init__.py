# dte/services/__init__.py
"""
Servicios de dominio para los DTE:

- Plazos legales de anulación (deadlines.py, sin dependencias de Django).
- Pasarela hacia el firmador y el Ministerio de Hacienda (gateway.py).
- Construcción de los JSON de DTE y eventos de invalidación (builders.py).
- Máquina de estados de emisión (workflow.py).
- Anulaciones (invalidation.py).
- Notas de crédito / débito (notes.py).
- Libros de IVA y su exportación a Excel (ledger.py, ledger_excel.py).
"""

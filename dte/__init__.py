# dte/__init__.py
"""
Documentos Tributarios Electrónicos (DTE) del Ministerio de Hacienda de
El Salvador: ciclo de vida, anulaciones, notas de crédito/débito y libros de IVA.
"""

# dte/api/__init__.py
"""API REST (Django REST Framework) del módulo DTE."""

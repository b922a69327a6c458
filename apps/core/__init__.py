"""
Core application: shared base model, error taxonomy, logging and the
request authorization pipeline (``apps.core.permissions``).
"""

"""
GN Registry API Package

FastAPI-based REST API over the registry services.
"""

__version__ = "1.0.0"

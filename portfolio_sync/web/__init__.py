"""
Flask web application exposing sync, scoring and settings endpoints.
"""

from .app import create_app

__all__ = ['create_app']

"""
Elevate Engine - API helpers

Usage:
    from elevate.api import success_response
"""

from .response import data_response, success_response

__all__ = ["data_response", "success_response"]

"""
Utility functions and decorators.
"""

from .error_handlers import handle_api_errors

__all__ = ["handle_api_errors"]

"""
Error handling decorators and utilities for API endpoints.

Centralizes the translation of domain exceptions into HTTP responses so every
router reports failures with the same status codes and payload shape.
"""

import inspect
from functools import wraps
from typing import Callable
from fastapi import HTTPException
import logging

from constants import HTTPStatus
from exceptions import (
    ApplicationError,
    ConfigurationError,
    InvalidTransitionError,
    PersistenceError,
    ProcessControlError,
    ProcessNotFound,
    ProcessStartError,
    ScheduleNotFound,
    ScheduleValidationError,
    SessionNotFound,
)

logger = logging.getLogger(__name__)


# Order matters: the first matching class wins
_STATUS_BY_ERROR = (
    (ConfigurationError, HTTPStatus.BAD_REQUEST),
    (ScheduleValidationError, HTTPStatus.BAD_REQUEST),
    (SessionNotFound, HTTPStatus.NOT_FOUND),
    (ScheduleNotFound, HTTPStatus.NOT_FOUND),
    (ProcessNotFound, HTTPStatus.NOT_FOUND),
    (InvalidTransitionError, HTTPStatus.CONFLICT),
    (ProcessStartError, HTTPStatus.BAD_GATEWAY),
    (ProcessControlError, HTTPStatus.BAD_GATEWAY),
    (PersistenceError, HTTPStatus.SERVICE_UNAVAILABLE),
)


def to_http_exception(operation_name: str, error: ApplicationError) -> HTTPException:
    """
    Convert an application error into an HTTPException.

    Client errors (4xx) are logged as warnings, upstream/storage failures as errors.
    """
    status_code = HTTPStatus.INTERNAL_SERVER_ERROR
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            status_code = code
            break

    if status_code < 500:
        logger.warning(f"{operation_name} - {type(error).__name__}: {error.message}")
    else:
        logger.error(f"{operation_name} - {type(error).__name__}: {error.message}", exc_info=True)

    return HTTPException(status_code=status_code, detail=error.to_dict())


def handle_api_errors(operation_name: str):
    """
    Decorator to handle common API errors consistently across endpoints.

    Args:
        operation_name: Human-readable name of the operation (e.g., "Start session")

    Returns:
        Decorated function that handles errors uniformly

    Example:
        @router.post("/{session_id}/start")
        @handle_api_errors("Start session")
        async def start_session(...):
            return await registry.request_start(session_id)
    """
    def decorator(func: Callable):
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except ApplicationError as e:
                raise to_http_exception(operation_name, e)
            except HTTPException:
                # Re-raise HTTPException as-is to preserve status code and detail
                raise
            except Exception as e:
                logger.error(f"{operation_name} - Unexpected error: {e}", exc_info=True)
                raise HTTPException(
                    status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
                    detail=f"{operation_name} failed. Please check server logs."
                )

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except ApplicationError as e:
                raise to_http_exception(operation_name, e)
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"{operation_name} - Unexpected error: {e}", exc_info=True)
                raise HTTPException(
                    status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
                    detail=f"{operation_name} failed. Please check server logs."
                )

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator

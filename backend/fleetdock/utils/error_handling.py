"""Centralized error handling utilities.

Public operations never let exceptions escape past their boundary: failures
are reported as ``{"ok": False, "reason": ...}`` and the full traceback is
logged server-side only. The HTTP layer uses :func:`safe_error_response` to
turn domain errors into generic HTTP errors.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException


def safe_error_response(
    logger_instance: logging.Logger,
    error: Exception,
    user_message: str,
    status_code: int = 500,
    log_level: str = "error",
) -> None:
    """Log full error details server-side and raise generic HTTPException for user.

    Args:
        logger_instance: Logger instance to use for server-side logging
        error: The exception that was caught
        user_message: Generic message to show to the user
        status_code: HTTP status code for the response (default: 500)
        log_level: Logging level to use (error, warning, info)

    Raises:
        HTTPException: With the user_message as detail
    """
    log_method = getattr(logger_instance, log_level, logger_instance.error)
    log_method(f"{user_message}: {type(error).__name__}", exc_info=True)

    raise HTTPException(status_code=status_code, detail=user_message)


def operation_failure(
    logger_instance: logging.Logger,
    error: Exception,
    reason: str,
    additional_fields: Optional[Dict[str, Any]] = None,
    log_level: str = "error",
) -> Dict[str, Any]:
    """Log an unexpected exception and return the structured failure shape.

    Args:
        logger_instance: Logger instance to use for server-side logging
        error: The exception that was caught
        reason: Short machine-friendly reason for the caller
        additional_fields: Extra fields merged into the response
        log_level: Logging level to use

    Returns:
        ``{"ok": False, "reason": reason, **additional_fields}``

    Examples:
        >>> try:
        ...     await engine.update_one(container_id)
        ... except Exception as e:
        ...     return operation_failure(logger, e, "update failed")
    """
    log_method = getattr(logger_instance, log_level, logger_instance.error)
    log_method(f"{reason}: {type(error).__name__}: {error}", exc_info=True)

    response: Dict[str, Any] = {"ok": False, "reason": reason}
    if additional_fields:
        response.update(additional_fields)
    return response


def log_and_continue(
    logger_instance: logging.Logger,
    error: Exception,
    context_message: str,
    log_level: str = "warning",
) -> None:
    """Log error but continue execution (for advisory follow-up steps).

    Examples:
        >>> try:
        ...     await reconciler.refresh_status(host_id, scope)
        ... except Exception as e:
        ...     log_and_continue(logger, e, "Advisory status refresh failed")
    """
    log_method = getattr(logger_instance, log_level, logger_instance.warning)
    log_method(f"{context_message}: {type(error).__name__}: {error}", exc_info=True)

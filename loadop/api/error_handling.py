"""
Shared HTTP error mapping for API routes.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, status

from loadop.core.errors import AlreadyExistsError, ConflictError, LoadOpError, NotFoundError

logger = logging.getLogger(__name__)


def http_exception(action: str, e: Exception) -> HTTPException:
    """
    Translate an exception raised while performing ``action`` into an HTTPException.

    Typed cluster errors keep their meaning (404/409); anything else is logged
    and surfaced as a 500 with the action in the message.
    """
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, (AlreadyExistsError, ConflictError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    logger.exception("Failed to %s", action)
    detail: object = f"Failed to {action}: {e}"
    if isinstance(e, LoadOpError):
        detail = {"message": f"Failed to {action}", "error": e.to_dict()}
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)

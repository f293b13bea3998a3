# app/attendance/api/utilities/errors.py

from fastapi import HTTPException, status

from ...services.errors import ServiceError, UsageError, NotFoundError, AuthorizationError


def to_http_exception(e: ServiceError, not_found_status: int = status.HTTP_404_NOT_FOUND) -> HTTPException:
    """Maps a service layer exception onto the HTTP status the routers answer with."""
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=not_found_status, detail=str(e))
    if isinstance(e, UsageError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, AuthorizationError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

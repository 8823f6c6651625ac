from fastapi import HTTPException, status

from safetrip.errors import ConcurrencyConflict, InvalidTransition, NotFoundError, SafeTripError, ValidationError


def to_http(e: SafeTripError) -> HTTPException:
    """Map a domain error raised under a route onto its HTTP response."""
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, ConcurrencyConflict):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, (ValidationError, InvalidTransition)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

from fastapi import HTTPException, status


def http_error(exc: Exception) -> HTTPException:
    """Map a service-layer lookup or validation error onto the HTTP status the admin UI expects."""
    detail = str(exc) or exc.__class__.__name__
    if isinstance(exc, PermissionError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)
    if "not found" in detail.lower():
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

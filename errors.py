"""Error types shared by the memorial service.

Each class carries the HTTP status the API layer answers with, so handlers
in ``main.py`` only need to read ``status_code`` and ``message``.
"""


class MemorialError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(MemorialError):
    """Bad input caught before any network call or write."""
    status_code = 422


class ServiceError(MemorialError):
    """An external service (database, storage, geocoder, auth backend) failed."""
    status_code = 502


class NotFound(MemorialError):
    status_code = 404


class PermissionDenied(MemorialError):
    status_code = 403


class AuthError(MemorialError):
    status_code = 401


class LocationUnavailable(MemorialError):
    """The device could not report a position."""
    status_code = 422


class PlaceNotFound(MemorialError):
    """A place search returned nothing."""
    status_code = 404

"""Errors raised by the geo index and its request handlers."""


class GeoError(Exception):
    """Base error. ``code`` is the machine-readable reason returned to callers."""

    code = "internal"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class InvalidArgument(GeoError):
    code = "invalid-argument"
    status_code = 400


class Unauthenticated(GeoError):
    code = "unauthenticated"
    status_code = 401


class UserProfileNotFound(GeoError):
    code = "not-found"
    status_code = 404

    def __init__(self, user_id: str):
        super().__init__(f"User profile not found: {user_id}")
        self.user_id = user_id


class StaleLocationUpdate(GeoError):
    code = "aborted"
    status_code = 409


class RateLimitExceeded(GeoError):
    code = "resource-exhausted"
    status_code = 429


class InvalidGeohash(GeoError):
    """Malformed geohash, usually a corrupted stored value."""

    code = "data-loss"
    status_code = 500


class BackingStoreUnavailable(GeoError):
    code = "unavailable"
    status_code = 503


class DocumentNotFound(GeoError):
    """An update targeted a document that does not exist."""

    code = "not-found"
    status_code = 404

    def __init__(self, path: str):
        super().__init__(f"No document to update: {path}")
        self.path = path

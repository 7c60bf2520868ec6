"""
Error kinds raised by the service layer.

Each carries the HTTP status the API answers with; app.py turns them into
``{"message": ...}`` JSON bodies.
"""


class LibraryError(Exception):
    status_code = 400

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"message": self.message}


class NotFoundError(LibraryError):
    status_code = 404


class InvalidReferenceError(LibraryError):
    """A foreign id in the request does not resolve."""
    status_code = 400


class ConflictError(LibraryError):
    """The entity is in a state that forbids the operation."""
    status_code = 400


class ValidationError(LibraryError):
    status_code = 400

    def __init__(self, errors):
        super().__init__("Validation failed")
        self.errors = list(errors)

    def to_dict(self):
        return {"message": self.message, "errors": self.errors}


class AuthenticationError(LibraryError):
    status_code = 401


class ForbiddenError(LibraryError):
    status_code = 403

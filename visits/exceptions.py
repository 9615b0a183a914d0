from rest_framework import status
from rest_framework.exceptions import APIException


class VisitError(APIException):
    """Expected outcome of a visit operation that the caller must render."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "The visit operation could not be completed."
    default_code = "visit_error"


class ValidationError(VisitError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid input."
    default_code = "invalid"


class ConflictError(VisitError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "The request conflicts with an existing record."
    default_code = "conflict"


class RestrictedError(VisitError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Visitor access is restricted."
    default_code = "restricted"


class NotFoundError(VisitError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found."
    default_code = "not_found"


class PersistenceError(APIException):
    """A repository write failed; invariants can no longer be guaranteed."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "The visit store could not be updated."
    default_code = "persistence_error"

"""
Order core error taxonomy.

Routes translate any OrderCoreError into {"error": message, **details} with
the class's status_code. DuplicateFinanceEntry and ExternalDispatchFailed are
internal: the order core catches them, logs, and carries on.
"""


class OrderCoreError(Exception):
    """Base class for errors surfaced to the caller."""
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ValidationError(OrderCoreError):
    status_code = 400


class NotFoundError(OrderCoreError):
    status_code = 404


class ForbiddenError(OrderCoreError):
    status_code = 403


class InsufficientCreditError(OrderCoreError):
    status_code = 409


class InvalidTransitionError(OrderCoreError):
    status_code = 409


class AlreadyClosedError(OrderCoreError):
    status_code = 409


class DuplicateFinanceEntry(OrderCoreError):
    status_code = 409


class ExternalDispatchFailed(OrderCoreError):
    status_code = 502

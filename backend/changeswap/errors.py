"""Error taxonomy for the exchange core.

Services raise these; the API layer renders them with ``status_code``.
They subclass ValueError so callers written against plain ValueError still work.
"""


class ExchangeError(ValueError):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ExchangeError):
    """Bad input (coordinates, ratings, missing fields). Nothing was written."""

    status_code = 400


class NotAuthorized(ExchangeError):
    """Caller is not allowed to act on this record."""

    status_code = 403


class NotFound(ExchangeError):
    status_code = 404


class StateConflict(ExchangeError):
    """The record is not in a state that allows the operation. Refresh and retry."""

    status_code = 409


class DuplicateRequest(StateConflict):
    """An open match request from this requester already exists for the post."""


class TransientStoreError(ExchangeError):
    """Backend/network failure. The only retryable class."""

    status_code = 503

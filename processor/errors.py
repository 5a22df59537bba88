"""Exceptions raised by the recurring events service.

The HTTP layer maps these to status codes: ``PatternNotFoundError`` to 404
and ``InvalidArgumentError`` to 400. Anything else is a 500.
"""


class RecurringEventsError(Exception):
    """Base exception for recurring events cache errors."""


class PatternNotFoundError(RecurringEventsError):
    """No cached pattern matches the requested natural key exactly."""


class InvalidArgumentError(RecurringEventsError):
    """A request payload or query parameter failed validation."""

"""
Error taxonomy for the access-control and anonymity core.

Messages are deliberately neutral. A denial never says whether the target
exists, which tenant owns it, or whether the role or the tenant was the
reason, so callers can surface str(exc) without further filtering.
"""


NOT_PERMITTED = "Not permitted"


class SollarError(Exception):
    """Base class for all errors raised by the core."""
    default_message = "Request failed"

    def __init__(self, message: str = None):
        super().__init__(message or self.default_message)


class Unauthenticated(SollarError):
    """No valid principal could be resolved."""
    default_message = NOT_PERMITTED


class Forbidden(SollarError):
    """Principal resolved but lacks tenant or role for the action."""
    default_message = NOT_PERMITTED


class NotFound(SollarError):
    """Missing row, or a row owned by another tenant."""
    default_message = "Not found"


class StoreUnavailable(SollarError):
    """Transient infrastructure failure. Safe to retry."""
    default_message = "Data store unavailable"


class InvalidSubmission(SollarError, ValueError):
    """A survey answer failed validation."""
    default_message = "Invalid submission"


class InvalidTransition(SollarError, ValueError):
    """Assessment lifecycle change that is not allowed."""
    default_message = "Invalid status transition"


class ConfirmationRequired(SollarError):
    """Destructive action attempted without the matching confirmation."""
    default_message = "Confirmation required"


class AggregationCancelled(SollarError):
    """Aggregation was cancelled or timed out. No data is returned."""
    default_message = "Aggregation cancelled"

"""
Error taxonomy for usage aggregation.

Caller mistakes and infrastructure faults are kept distinguishable.
"""


class UsageAggregationError(Exception):
    """Base class for all aggregation errors."""
    status_code = 500


class InvalidRange(UsageAggregationError, ValueError):
    """Custom range whose start date is after its end date."""
    status_code = 400


class RangeTooLarge(UsageAggregationError, ValueError):
    """Custom range spanning more days than the configured maximum."""
    status_code = 400


class StoreUnavailable(UsageAggregationError):
    """Counter store could not be reached or timed out.

    Aborts the whole aggregation call; no partial data is returned.
    """
    status_code = 500

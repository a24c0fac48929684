"""
quarry Exceptions
=================

Fetch failures are never wrapped: whatever the caller's operation raised is
recorded on the query and re-raised to direct awaiters. The classes below
cover the conditions the engine itself produces.
"""

from typing import Any


class CancelledError(Exception):
    """
    Raised into awaiters of a fetch or mutation that was cancelled.

    Cancellation is not a failure: it is never recorded as a query error.

    Attributes:
        revert: Restore the state captured before the cancelled attempt.
        silent: A newer fetch superseded this one; awaiters are handed over
            to the newer fetch instead of seeing this error.
    """

    def __init__(self, revert: bool = False, silent: bool = False):
        super().__init__("CancelledError")
        self.revert = revert
        self.silent = silent


class MissingQueryFunctionError(Exception):
    """Raised when a query is fetched without a usable query function."""

    pass


class MissingMutationFunctionError(Exception):
    """Raised when a mutation is executed without a mutation function."""

    pass


def is_cancelled_error(value: Any) -> bool:
    return isinstance(value, CancelledError)

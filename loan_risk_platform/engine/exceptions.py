"""
Engine Exceptions
=================

Error taxonomy shared by the schedule, scenario and simulation modules.

``InvalidLoanTerms`` and ``InvalidCorrelationInput`` reject a request before
any computation runs. ``MissingMarketData`` is raised by reference-data
lookups and is always recovered by the caller with fallback parameters; the
run is then flagged as degraded.
"""

from __future__ import annotations

from typing import Optional


class EngineError(Exception):
    """
    Base exception for engine issues.

    All engine-specific exceptions inherit from this class,
    allowing callers to catch all engine errors with a single handler.
    """

    pass


class InvalidLoanTerms(EngineError, ValueError):
    """
    Raised when loan terms cannot produce a schedule.

    Examples are a non-positive tenor, a negative rate, interest-only
    months that cover the whole tenor, or a building-depot loan without a
    drawn amount.

    Attributes
    ----------
    field : str, optional
        Name of the offending term, when a single term is at fault.
    """

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class InvalidCorrelationInput(EngineError, ValueError):
    """
    Raised when a correlation matrix is malformed or cannot be repaired.

    The whole run is aborted before any path is simulated.
    """

    pass


class MissingMarketData(EngineError, LookupError):
    """
    Raised when a sector or property-type parameter lookup fails.

    Attributes
    ----------
    key : str
        The sector or property type that had no parameters.
    """

    def __init__(self, key: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"No market parameters for '{key}'")
        self.key = key


class RequestValidationError(EngineError):
    """
    Raised when a simulation request payload violates the request schema.

    Attributes
    ----------
    path : str
        JSON path of the offending element, when known.
    """

    def __init__(self, message: str, path: str = "") -> None:
        super().__init__(message)
        self.path = path

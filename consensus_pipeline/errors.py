"""
Exception types raised by the consensus pipeline.

Every error is also a ValueError, so callers that already guard toolkit
calls with ``except ValueError`` keep working.
"""


class ConsensusError(Exception):
    """Base class for all consensus pipeline errors."""


class InvalidArgumentError(ConsensusError, ValueError):
    """Wrong argument type or value (e.g. fewer than two raters)."""


class ShapeMismatchError(ConsensusError, ValueError):
    """Raters disagree on slice, row or column counts."""


class GeometryMismatchError(ConsensusError, ValueError):
    """Pixel spacing, orientation or origin cannot be reconciled."""


class InvalidIndicesError(ConsensusError, ValueError):
    """Malformed sparse pixel index input."""

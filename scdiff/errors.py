"""
Error types raised by the scdiff engines.

All hard failures derive from ValueError so callers that already guard
input validation with ``except ValueError`` keep working.
"""


class ScdiffError(ValueError):
    """Base class for scdiff validation failures."""


class InvalidDesign(ScdiffError):
    """Condition labels cannot support the requested contrast."""


class NonFiniteInput(ScdiffError):
    """NaN or infinite values found in a matrix or ranking."""


class EmptyRanking(ScdiffError):
    """A ranked gene list with zero genes was supplied."""


class NoSetsPassedFilter(UserWarning):
    """
    Every gene set was excluded by the size bounds.

    Issued with ``warnings.warn``; the enrichment run still completes and
    returns an empty result list.
    """

from __future__ import annotations


class PerceptualCriterionError(Exception):
    """Base class for criterion construction and evaluation failures."""


class LayerNotFoundError(PerceptualCriterionError, LookupError):
    pass


class AmbiguousLayerError(PerceptualCriterionError, LookupError):
    pass


class CaptureMissingError(PerceptualCriterionError, RuntimeError):
    """A loss stage was asked for a loss before any target was captured."""


class StaleForwardError(PerceptualCriterionError, RuntimeError):
    """`gradient` was called without a matching `evaluate` on the same input."""


class GuideMismatchError(PerceptualCriterionError, ValueError):
    pass

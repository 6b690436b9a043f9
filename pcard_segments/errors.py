# Exceptions and warnings raised by the segmentation pipeline


class SegmentationError(Exception):
    """Base class for pipeline errors."""


class SchemaViolationError(SegmentationError, ValueError):
    """Input table is missing columns, has unusable rows, or an inconsistent attribute schema."""


class InvalidParameterError(SegmentationError, ValueError):
    """A caller-supplied parameter is out of range (K, candidate range, top-N, entity ids)."""

    def __init__(self, parameter: str, value, message: str):
        self.parameter = parameter
        self.value = value
        super().__init__(f"{parameter}={value!r}: {message}")


class ModelTrainingError(SegmentationError, RuntimeError):
    """The importance model could not be trained. Cluster labels are still valid."""


class ConvergenceFailureWarning(UserWarning):
    """KMeans reached its iteration cap; the best partition found is returned anyway."""

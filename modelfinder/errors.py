"""Exception hierarchy for modelfinder."""


class ModelFinderError(Exception):
    """Base class for all modelfinder errors."""


class TaxonomyError(ModelFinderError):
    """The task taxonomy file is missing or does not match the schema."""


class InitializationError(ModelFinderError):
    """Embedding model weights could not be acquired or loaded."""


class EmbeddingUnavailableError(ModelFinderError):
    """The embedding engine is not ready to embed text."""


class EmptyInputError(ModelFinderError, ValueError):
    """Classification was requested for an empty or whitespace-only input."""


class CalibrationError(ModelFinderError):
    """A calibration experiment could not produce a result."""

class TransformError(Exception):
    """Base class for failures of a single job's transform."""


class DecodeError(TransformError):
    """Source bytes could not be parsed as a supported raster image."""


class EncodeError(TransformError):
    """The encoder failed or refused every quality level."""

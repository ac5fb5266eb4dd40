"""Project error hierarchy."""


class SessionGateError(Exception):
    """Base error."""


class ConfigurationError(SessionGateError):
    """Raised when a required setting is missing or invalid."""


class BadRequestError(SessionGateError):
    """Raised when the client payload cannot be parsed."""


class UpstreamError(SessionGateError):
    """Raised when the marketplace answers with something unusable."""


class UpstreamUnreachableError(UpstreamError):
    """Raised when the marketplace cannot be reached at all."""


class StreamingUnsupportedError(SessionGateError):
    """Raised when the client transport cannot deliver incremental chunks."""


class TransportError(SessionGateError):
    """Raised when reading or copying a body fails."""

from __future__ import annotations


class ExtractionError(RuntimeError):
    pass


class CapabilityError(ExtractionError):
    """Transient failure talking to the reasoning capability."""


class CapabilityTimeout(CapabilityError):
    pass


class CapabilityConfigurationError(RuntimeError):
    """The capability is missing credentials or rejects them. Fatal for a job."""


class ChunkedParseError(ExtractionError):
    pass

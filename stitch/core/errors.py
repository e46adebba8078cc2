"""Exception taxonomy for the Stitch engine."""


class StitchError(Exception):
    """Base class for all engine errors."""

    pass


class GraphValidationError(StitchError):
    """Raised when a graph or canvas fails structural validation.

    Carries every problem found so callers can report them together.
    """

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Invalid graph: " + "; ".join(self.errors))


class NotFoundError(StitchError):
    """Raised for unknown run, node, graph version, canvas or entity ids."""

    pass


class InvalidStateTransition(StitchError):
    """Raised when a callback, retry or completion targets a node in the wrong status."""

    def __init__(self, message: str, current: str | None = None, requested: str | None = None):
        self.current = current
        self.requested = requested
        super().__init__(message)


class ExecutionError(StitchError):
    """A worker's external call failed.

    Recorded on the node as ``failed`` with this message; never propagated
    past the engine.
    """

    pass


class JourneyConfigurationError(StitchError):
    """Raised when a canvas spine cannot be followed unambiguously."""

    pass

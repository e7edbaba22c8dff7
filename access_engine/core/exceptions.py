"""Custom exception classes for the access decision engine."""


class AccessEngineError(Exception):
    """Base exception for the access decision engine."""

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)


class InvalidRequestError(AccessEngineError):
    """Raised when a decision request is malformed (missing identifiers)."""
    pass


class CycleError(AccessEngineError):
    """Raised when a role hierarchy edge would create a cycle."""

    def __init__(self, parent: str, child: str):
        self.parent = parent
        self.child = child
        super().__init__(f"Edge {parent!r} -> {child!r} would create a cycle")


class ResolutionError(AccessEngineError):
    """Raised when a decision cannot be reached (storage failure or timeout).

    Callers must treat this as a denial, but it is not a policy outcome.
    """
    pass


class NotFoundError(AccessEngineError):
    """Raised when a requested role, resource, action or attribute is not found."""
    pass


class AttributeNotFoundError(NotFoundError):
    """Raised when an owner has no attribute under the requested key."""
    pass


class ConflictError(AccessEngineError):
    """Raised when a record already exists or is still referenced."""
    pass

"""
Error types raised by dynserve.

All errors derive from DynServeError so callers can catch the whole family.
"""

from typing import Optional


class DynServeError(Exception):
    """Base class for dynserve errors"""


class AllocationFailure(DynServeError):
    """
    No bindable port found within the attempt budget.

    Attributes:
        start_port: First port probed
        max_attempts: Number of consecutive ports probed
    """

    def __init__(self, start_port: int, max_attempts: int):
        self.start_port = start_port
        self.max_attempts = max_attempts
        super().__init__(
            f"No available port found after {max_attempts} attempts "
            f"(range {start_port}-{self.last_port})"
        )

    @property
    def last_port(self) -> int:
        """Last port of the attempted range"""
        return self.start_port + self.max_attempts - 1


class NotFoundFailure(DynServeError, KeyError):
    """Operation referenced a name absent from the registry"""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Server {name} not found.")

    def __str__(self) -> str:
        # KeyError would repr() the message otherwise
        return self.args[0]


class DuplicateInstance(DynServeError):
    """Registry insert on a name that is already present"""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Server {name} is already registered.")


class CreationFailure(DynServeError):
    """Instance could not be (re)created"""

    def __init__(self, name: str, reason: Optional[str] = None):
        self.name = name
        message = f"Failed to create new server for {name}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class CloseFailure(DynServeError):
    """Listener failed to close; the instance stays registered"""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Failed to close server {name}")


class RouteSourceError(DynServeError):
    """Route source is neither a route list nor a loadable route module"""

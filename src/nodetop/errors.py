"""Exceptions raised when talking to a node."""


class NodeError(Exception):
    """Base class for node communication errors."""


class NodeConnectionError(NodeError, ConnectionError):
    """The node is unreachable, refused the connection, or hung up mid-call."""


class NodeTimeoutError(NodeConnectionError):
    """A call did not complete within the configured timeout."""


class AuthError(NodeError):
    """The node rejected our cookie (or we rejected its)."""


class BadRequestError(NodeError):
    """The node could not make sense of a request."""


class StaleReferenceError(NodeError):
    """The referenced process no longer exists on the node."""

    def __init__(self, identity: str, message: str | None = None) -> None:
        super().__init__(message or f"process {identity} no longer exists")
        self.identity = identity

"""Exceptions for clusterctl."""


class ClusterCtlError(Exception):
    """Base exception for clusterctl errors."""

    pass


class ConnectionError(ClusterCtlError):
    """Error establishing or maintaining a connection to an instance."""

    pass


class ProtocolError(ClusterCtlError):
    """Protocol-level error."""

    pass


class OperationalError(ClusterCtlError):
    """An instance answered a request with a failure response."""

    code: int
    message: str

    def __init__(self, code: int, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"[{code}] {message}")


class ConfigError(ClusterCtlError):
    """Invalid or conflicting configuration."""

    pass


class InvariantError(ClusterCtlError):
    """The cluster has no primary or more than one primary."""

    pass


class PreconditionError(ClusterCtlError):
    """A command cannot proceed against the cluster in its current state."""

    pass


class NoStandbyError(PreconditionError):
    """No reachable standby was found to promote."""

    pass


class TransitionError(ClusterCtlError):
    """A role transition on an instance failed."""

    pass


class RestartError(ClusterCtlError):
    """Restarting an instance, or waiting for it to become ready, failed."""

    pass

class K3pError(Exception):
    """Base class for every error raised by k3p."""


class ArtifactNotFoundError(K3pError, FileNotFoundError):
    pass


class IntegrityError(K3pError):
    pass


class TransportError(K3pError):
    """A node connection could not be established or broke mid-operation."""


class ExecutionError(K3pError):
    def __init__(self, msg: str, exit_status: int = -1):
        super().__init__(msg)
        self.exit_status = exit_status


class MalformedInputError(K3pError, ValueError):
    pass


class ProcessNotFoundError(K3pError):
    pass


class DiscoveryExhaustedError(K3pError):
    pass

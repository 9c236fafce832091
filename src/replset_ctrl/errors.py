"""Errors raised while converging a replica set."""


class ReplsetError(RuntimeError):
    """Base class for every fatal condition of a reconciliation pass."""


class ConfigurationError(ReplsetError):
    pass


class MemberValidationError(ReplsetError, ValueError):
    pass


class MemberTypeError(MemberValidationError, TypeError):
    pass


class CommandExecutionError(ReplsetError):
    """The command channel could not run a command or decode its output."""

    def __init__(self, message, host=None):
        super().__init__(message)
        self.host = host


class TopologyConflictError(ReplsetError):
    """A host that can never join the set; liveness names how it was classified, when it answered."""

    def __init__(self, message, host, liveness=None):
        super().__init__(message)
        self.host = host
        self.liveness = liveness


class NoReachableMemberError(ReplsetError):
    pass


class NoPrimaryError(ReplsetError):
    pass


class ReplsetCommandError(ReplsetError):
    """initiate/reconfig was acknowledged with ok: 0."""

    def __init__(self, message, errmsg=None):
        super().__init__(message)
        self.errmsg = errmsg


class ConvergenceTimeoutError(ReplsetError):
    def __init__(self, message, host):
        super().__init__(message)
        self.host = host

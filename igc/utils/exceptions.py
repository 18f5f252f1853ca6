from typing import Any


class ParameterError(Exception):
    pass


class ConfigResolutionError(Exception):
    def __init__(self, msg: Any) -> None:
        super().__init__("error resolving gitops config: " + str(msg))


class LockTimeoutError(Exception):
    pass


class GitError(Exception):
    pass


class StaleBaseError(GitError):
    """The remote moved past the base the local changes were built on."""


class AuthenticationError(GitError):
    pass


class MaterializationError(Exception):
    def __init__(self, msg: Any) -> None:
        super().__init__("error materializing payload: " + str(msg))


class GitOpsPopulateError(Exception):
    pass

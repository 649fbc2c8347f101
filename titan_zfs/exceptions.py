class TitanZFSError(Exception):
    """Base class for provisioning and pool errors."""


class VersionUnparsable(TitanZFSError, ValueError):
    pass


class NetworkFailure(TitanZFSError):
    pass


class BuildFailure(TitanZFSError):
    """A build step failed; the current remediation stage is aborted."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"{stage}: {message}")
        self.stage = stage


class LoadFailure(TitanZFSError):
    pass


class NoCompatibleModule(TitanZFSError):
    pass


class PoolOperationError(TitanZFSError):
    """A pool operation failed on an otherwise usable ZFS installation."""

    def __init__(self, pool: str, message: str):
        super().__init__(f"Pool {pool}: {message}")
        self.pool = pool

class HsmError(Exception):
    """Base class for every error raised by the tiering backend."""
    pass


class ValidationError(HsmError):
    """An action is missing a field or carries a malformed one."""
    pass


class ResolutionError(HsmError):
    """A FID could not be resolved to a path on the filesystem."""
    pass


class TransferError(HsmError):
    """Upload, download, listing or delete against the object store failed."""
    pass


class NotFoundError(TransferError):
    """The remote object does not exist."""
    pass


class LustreCommandError(HsmError):
    """An `lfs` invocation exited non-zero."""
    pass

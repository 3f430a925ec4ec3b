"""
Error taxonomy for backup runs.

Every subclass of BackupError is fatal: the executor stops the run, notifies
and exits with the sentinel code. Nothing here is ever retried.
"""


class BackupError(Exception):
    """Base class for conditions that abort a backup run."""
    pass


class ConfigMissing(BackupError):
    """Raised when no configuration file exists (a default one is written)."""
    pass


class ConfigInvalid(BackupError):
    """Raised when the configuration file cannot be parsed."""
    pass


class BackendPrereqMissing(BackupError):
    """Raised when the selected storage backend is not usable as configured."""
    pass


class HostIdentityUntrusted(BackupError):
    """Raised when a remote server presents an unexpected host key."""
    pass


class TransportConnectFailure(BackupError):
    """Raised when a remote session cannot be established."""
    pass


class DumpProcessFailure(BackupError):
    """Raised when the database dump utility fails."""
    pass


class ArchiveSourceMissing(BackupError):
    """Raised when application files to archive cannot be found."""
    pass


class UploadFailure(BackupError):
    """Raised when an artifact cannot be stored in the backend."""
    pass

"""
Error taxonomy for the hot-backup protocol
"""


class BackupError(Exception):
    """Base class for all backup errors"""


class UsageError(BackupError):
    """Bad invocation; raised before any backup work starts"""


class RunLockError(UsageError):
    """Another backup run holds the destination lock"""


class HypervisorError(BackupError):
    """The hypervisor cannot be reached or enumerated"""


class VMNotFoundError(BackupError, LookupError):
    """The VM vanished between enumeration and processing"""


class ConfigExportError(BackupError):
    """A VM definition could not be exported"""


class SnapshotError(BackupError):
    """The hypervisor rejected a disk snapshot"""


class CopyError(BackupError):
    """A disk image could not be copied"""


class CompactionError(BackupError):
    """A disk image copy could not be compacted"""


class CommitError(BackupError):
    """A snapshot overlay could not be merged back and pivoted.

    The VM may still be writing to the overlay, so this is always treated
    as CRITICAL.
    """


class CleanupWarning(BackupError):
    """Best-effort cleanup of a merged overlay failed"""

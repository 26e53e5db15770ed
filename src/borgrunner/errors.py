"""Domain errors for borgrunner."""


class BackupError(RuntimeError):
    """Raised when the backup run cannot continue safely."""


class ConfigurationError(BackupError):
    """Invalid paths, missing settings or unsafe secrets file."""


class DependencyMissingError(BackupError):
    """A required external tool is absent or too old."""


class EnvironmentHealthError(BackupError):
    """The host is not in a state where a backup can run (e.g. low disk space)."""


class DumpError(BackupError):
    """A database dump failed or produced a corrupt stream."""


class ArchiveToolError(BackupError):
    """Borg exited with a code outside the success and warning bands."""

    def __init__(self, message: str, returncode: int):
        super().__init__(message)
        self.returncode = returncode


class VerificationError(BackupError):
    """The created archive could not be proven complete and restorable."""


class LockContentionError(BackupError):
    """Another live instance holds the execution lock."""


class SecretExposureError(BackupError):
    """A passphrase file is still on disk after it should have been erased."""

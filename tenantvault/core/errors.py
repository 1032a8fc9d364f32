from __future__ import annotations


class TenantVaultError(Exception):
    """Base error for tenantvault."""


class ServiceBusyError(TenantVaultError):
    """A bounded worker pool is saturated; retry later."""


class StorageError(TenantVaultError):
    """Object storage operation failure."""


class StorageObjectNotFoundError(StorageError):
    """Requested object does not exist in storage."""


class BackupError(TenantVaultError):
    """Backup or restore failure."""


class BackupNotFoundError(BackupError):
    """Backup record does not exist or is not visible to the caller."""


class BackupNotReadyError(BackupError):
    """Backup is not completed or its blob is missing."""


class BackupLimitExceededError(BackupError):
    """Organization already holds the maximum number of backups."""


class ConfirmationRequiredError(BackupError):
    """Destructive restore was requested without the confirmation phrase."""


class InvalidStatusTransitionError(BackupError):
    """Backup status update would move the lifecycle backwards."""


class InvalidBackupUpdateError(BackupError):
    """Backup update violates a record invariant."""


class PasswordRequiredError(BackupError):
    """Encrypted backup operation attempted without a password."""


class BackupAuthenticationError(BackupError):
    """Ciphertext failed authentication: wrong password or tampered payload."""

    def __init__(self, message: str = "Incorrect password") -> None:
        super().__init__(message)


class InvalidEncryptionMetadataError(BackupError):
    """Stored iv/auth tag are missing or malformed."""


class MalformedArchiveError(BackupError):
    """Archive payload is not readable or lacks its data entry."""


class DumpProcessError(BackupError):
    """Database dump/restore utility exited unsuccessfully."""

    def __init__(self, tool: str, returncode: int, stderr: str) -> None:
        self.tool = tool
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"{tool} failed with code {returncode}: {stderr}")
